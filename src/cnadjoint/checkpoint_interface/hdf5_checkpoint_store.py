"""Checkpoint store that persists every step to HDF5 via h5py."""

import os

import h5py

# pylint: disable = no-name-in-module
from mpi4py.MPI import Comm, COMM_WORLD
import numpy as np
from scipy.sparse import csc_matrix, issparse

from .checkpoint_store import CheckpointStore, Checkpoint


class Hdf5CheckpointStore(CheckpointStore):
    """
    Checkpoint store writing all time steps to an HDF5 file. Each process writes the
    local part of its vectors to its own file. Every step is a group with the datasets
    "state" and, if given, "jacobian" (a group with the csc arrays for sparse
    Jacobians), and the time as attribute.

    Parameters
    ----------
    file_name: str
        Name of the file. With more than one process, the rank is added before the
        file extension.
    comm: Comm
        Communicator of the distributed vectors.
    keep_file: bool
        Whether the file is kept on release.
    """

    def __init__(self, file_name: str, comm: Comm = COMM_WORLD, keep_file: bool = False):
        super().__init__()
        if comm.size > 1:
            stem, extension = os.path.splitext(file_name)
            file_name = f"{stem}_{comm.rank}{extension}"
        self.file_name = file_name
        self.comm = comm
        self.keep_file = keep_file
        self._stored_steps = set()
        with h5py.File(self.file_name, mode="w"):
            pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.release()

    def _put(self, checkpoint: Checkpoint):
        with h5py.File(self.file_name, mode="r+") as f:
            if str(checkpoint.step) in f:
                del f[str(checkpoint.step)]
            group = f.create_group(str(checkpoint.step))
            group.create_dataset("state", data=checkpoint.state)
            if checkpoint.time is not None:
                group.attrs["time"] = checkpoint.time
            if issparse(checkpoint.jacobian):
                jacobian = csc_matrix(checkpoint.jacobian)
                sparse_group = group.create_group("sparse_jacobian")
                sparse_group.create_dataset("data", data=jacobian.data)
                sparse_group.create_dataset("indices", data=jacobian.indices)
                sparse_group.create_dataset("indptr", data=jacobian.indptr)
                sparse_group.attrs["shape"] = jacobian.shape
            elif checkpoint.jacobian is not None:
                group.create_dataset("jacobian", data=checkpoint.jacobian)
        self._stored_steps.add(checkpoint.step)

    def _get(self, step: int) -> Checkpoint:
        with h5py.File(self.file_name, mode="r") as f:
            group = f[str(step)]
            state = group["state"][...]
            time = float(group.attrs["time"]) if "time" in group.attrs else None
            jacobian = None
            if "sparse_jacobian" in group:
                sparse_group = group["sparse_jacobian"]
                jacobian = csc_matrix(
                    (
                        sparse_group["data"][...],
                        sparse_group["indices"][...],
                        sparse_group["indptr"][...],
                    ),
                    shape=tuple(sparse_group.attrs["shape"]),
                )
            elif "jacobian" in group:
                jacobian = np.asarray(group["jacobian"][...])
        return Checkpoint(step, state, jacobian, time)

    def _steps(self):
        return self._stored_steps

    def _release(self):
        self._stored_steps.clear()
        if not self.keep_file and os.path.exists(self.file_name):
            os.remove(self.file_name)
