# pylint: disable=missing-module-docstring

from .checkpoint_store import CheckpointStore, Checkpoint


class AllStepsCheckpointStore(CheckpointStore):
    """Checkpoint store that keeps the checkpoints of all time steps in memory. Memory
    inefficient, but fast, and there is no recomputation in the reverse sweep."""

    def __init__(self):
        super().__init__()
        self._storage = {}

    def _put(self, checkpoint: Checkpoint):
        self._storage[checkpoint.step] = checkpoint

    def _get(self, step: int) -> Checkpoint:
        return self._storage[step]

    def _steps(self):
        return self._storage.keys()

    def _release(self):
        self._storage.clear()
