from .checkpoint_store import CheckpointStore, Checkpoint
from .all_steps_checkpoint_store import AllStepsCheckpointStore
from .hdf5_checkpoint_store import Hdf5CheckpointStore

__all__ = [
    "CheckpointStore",
    "Checkpoint",
    "AllStepsCheckpointStore",
    "Hdf5CheckpointStore",
]
