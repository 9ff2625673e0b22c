# pylint: disable=missing-module-docstring

from dataclasses import dataclass, field


@dataclass
class TimeControl:
    """
    Object for exchanging time step data between the forward integrator, the adjoint
    engine and the physics. The time step size is fixed, the number of steps is known
    in advance.

    Parameters
    ----------
    initial_time: float
        Time of step 0, i.e. of the initial state.
    delta_t: float
        Fixed time step size.
    num_steps: int
        Number of time steps of the forward sweep.
    """

    initial_time: float
    delta_t: float
    num_steps: int
    step: int = field(init=False)
    step_time: float = field(init=False)

    def __post_init__(self):
        self.step = 0
        self.step_time = self.initial_time

    def time_of_step(self, step: int) -> float:
        """
        Parameters
        ------
        step: int
            Index of a time step.
        Returns
        ------
        float
            Time at the end of the given step.
        """
        return self.clamp_negative_zero(self.initial_time + step * self.delta_t)

    def is_last_time_step(self):
        """
        Returns
        ------
        bool
            True if last step.
        """
        return self.step == self.num_steps

    def termination_condition_status(self):
        """
        A termination condition parameter for a while loop, that terminates when
        last time step is reached.
        Returns
        ------
        bool
            False if reached
        """
        if not self.is_last_time_step():
            self.increment_step()
            return True
        return False

    def reset(self):
        """
        Returns the instance to its initial state.
        """
        self.__post_init__()

    def increment_step(self):
        """Increments step and step time"""
        self.step += 1
        self.step_time = self.time_of_step(self.step)

    def decrement_step(self):
        """Decrements step and step time"""
        self.step -= 1
        self.step_time = self.time_of_step(self.step)

    @staticmethod
    def clamp_negative_zero(time: float, tol: float = 1e-14) -> float:
        """Replaces barely negative times, which appear through round-off when going
        backwards in time, by zero."""
        if -tol < time < 0.0:
            return 0.0
        return time
