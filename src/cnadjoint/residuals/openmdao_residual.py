# pylint: disable=missing-module-docstring

from __future__ import annotations

import numpy as np
import openmdao.api as om

from cnadjoint.errors import SetupError


class OpenMDAOResidual:
    """
    Wraps an OpenMDAO problem into a residual function R(u). The state u consists of
    all outputs of the model that carry the state tag, in the order of the model.
    Evaluating R sets these outputs, runs apply_nonlinear on the model and returns the
    residuals of the tagged outputs.

    Parameters
    ----------
    problem: om.Problem
        OpenMDAO problem, needs to be in a state where its final_setup() method has
        been called already. For complex step, setup needs to be called with
        force_alloc_complex=True.
    state_tag: str
        Tag of the outputs that form the state.
    """

    def __init__(self, problem: om.Problem, state_tag: str = "state"):
        self.problem = problem
        self.state_tag = state_tag
        local_quantities = problem.model.get_io_metadata(
            iotypes="output",
            metadata_keys=["tags", "size"],
            tags=[state_tag],
            get_remote=False,
        )
        if not local_quantities:
            raise SetupError(f"No outputs with tag '{state_tag}' found in the model.")
        self.slices = {}
        start_index = 0
        for var, data in local_quantities.items():
            end_index = start_index + data["size"]
            self.slices[var] = slice(start_index, end_index)
            start_index = end_index
        self.size = start_index

    @property
    def supports_complex_step(self) -> bool:
        """Whether the problem has complex vectors allocated."""
        _, outputs, _ = self.problem.model.get_nonlinear_vectors()
        return outputs._alloc_complex  # pylint: disable=protected-access

    def get_state(self) -> np.ndarray:
        """Current values of the state outputs."""
        _, outputs, _ = self.problem.model.get_nonlinear_vectors()
        state = np.zeros(self.size)
        for var, index_slice in self.slices.items():
            state[index_slice] = np.real(outputs[var]).ravel()
        return state

    def __call__(self, state: np.ndarray) -> np.ndarray:
        state = np.asarray(state)
        if state.size != self.size:
            raise SetupError(
                f"State of size {state.size} doesn't fit the {self.size} tagged "
                "outputs of the model."
            )
        complex_step = np.iscomplexobj(state)
        if complex_step:
            if not self.supports_complex_step:
                raise TypeError(
                    "Complex state, but the problem was set up without "
                    "force_alloc_complex=True."
                )
            self.problem.set_complex_step_mode(True)
        try:
            _, outputs, residuals = self.problem.model.get_nonlinear_vectors()
            for var, index_slice in self.slices.items():
                outputs[var] = state[index_slice].reshape(outputs[var].shape)
            self.problem.model.run_apply_nonlinear()
            result = np.zeros(self.size, dtype=state.dtype if complex_step else float)
            for var, index_slice in self.slices.items():
                result[index_slice] = residuals[var].ravel()
        finally:
            if complex_step:
                self.problem.set_complex_step_mode(False)
        return result
