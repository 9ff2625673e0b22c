# pylint: disable=missing-module-docstring

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.sparse import issparse

from cnadjoint.errors import CheckpointError, MissingCheckpointError


@dataclass
class Checkpoint:
    """
    Data stored for one time step of the forward sweep.

    Parameters
    ----------
    step: int
        Index of the time step, 0 is the initial state.
    state: np.ndarray
        State at the end of the step.
    jacobian: np.ndarray or sparse matrix, optional
        Jacobian of the physics at the state, if stored.
    time: float, optional
        Time at the end of the step.
    """

    step: int
    state: np.ndarray
    jacobian: Optional[object] = None
    time: Optional[float] = None


def copy_array(array):
    """Copies dense or sparse arrays, passes None through."""
    if array is None:
        return None
    if issparse(array):
        return array.copy()
    return np.array(array)


class CheckpointStore(ABC):
    """
    Abstract interface for checkpoint stores. A store is filled during the forward
    sweep, then sealed and read during the reverse sweep, and finally released. All
    arrays are copied when stored and when handed out, so callers never alias the
    stored data.
    """

    def __init__(self):
        self._sealed = False
        self._released = False

    @property
    def is_sealed(self) -> bool:
        """Whether the store is read-only."""
        return self._sealed

    @property
    def is_released(self) -> bool:
        """Whether the data of the store was dropped."""
        return self._released

    def _check_not_released(self):
        if self._released:
            raise CheckpointError(f"{type(self).__name__} was used after release.")

    def put(self, step: int, state: np.ndarray, jacobian=None, time: float = None):
        """Stores the checkpoint of a step. Storing a step again overwrites it."""
        self._check_not_released()
        if self._sealed:
            raise CheckpointError(
                f"Can't store step {step}, {type(self).__name__} is sealed for the "
                "reverse sweep."
            )
        if isinstance(step, bool) or not isinstance(step, (int, np.integer)) or step < 0:
            raise CheckpointError(f"Step needs to be a non-negative int, got {step}")
        self._put(
            Checkpoint(
                int(step),
                np.array(state),
                copy_array(jacobian),
                None if time is None else float(time),
            )
        )

    def get(self, step: int) -> Checkpoint:
        """Returns a copy of the checkpoint of a step."""
        self._check_not_released()
        if step not in self:
            raise MissingCheckpointError(
                f"No checkpoint for step {step}. Stored steps: {self.steps()}"
            )
        checkpoint = self._get(step)
        return Checkpoint(
            checkpoint.step,
            np.array(checkpoint.state),
            copy_array(checkpoint.jacobian),
            checkpoint.time,
        )

    def seal(self):
        """Makes the store read-only, further puts raise a CheckpointError."""
        self._check_not_released()
        self._sealed = True

    def release(self):
        """Drops all stored data. Any later access raises a CheckpointError. Calling it
        again has no effect."""
        if not self._released:
            self._release()
            self._released = True

    def __contains__(self, step) -> bool:
        self._check_not_released()
        return step in self.steps()

    def __len__(self) -> int:
        return len(self.steps())

    def steps(self) -> list:
        """Sorted list of stored steps."""
        self._check_not_released()
        return sorted(self._steps())

    @abstractmethod
    def _put(self, checkpoint: Checkpoint):
        """Stores the (already copied) checkpoint."""

    @abstractmethod
    def _get(self, step: int) -> Checkpoint:
        """Loads the checkpoint of a stored step."""

    @abstractmethod
    def _steps(self):
        """Iterable of the stored steps."""

    @abstractmethod
    def _release(self):
        """Drops the stored data."""
