"""Defines interface for file writers, the HDF5 and TXT file writers, and the text
dump of Jacobians."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import json
import os

import h5py

# pylint doesn't pick it up, but it's there
# pylint: disable = no-name-in-module
from mpi4py.MPI import Comm, COMM_WORLD
import numpy as np


@dataclass
class FileWriterInterface(ABC):
    """Interface for file writers of trajectories (states or adjoints per time step).
    The vectors may be distributed, they are gathered on rank 0 in rank order."""

    file_name: str
    comm: Comm

    def gather(self, data: np.ndarray):
        """Gathers the distributed vector on rank 0. Returns None on other ranks."""
        parts = self.comm.gather(np.ravel(np.real(data)), root=0)
        if self.comm.rank == 0:
            return np.concatenate(parts)
        return None

    @abstractmethod
    def write_step(
        self, step: int, time: float, data: np.ndarray, name: str = "state"
    ) -> None:
        """Writes out the quantity with the given name at the given step to file"""


@dataclass
class Hdf5FileWriter(FileWriterInterface):
    """File writer using h5py to write out to HDF5-files. Each quantity gets its own
    group, each step a dataset with the time as attribute."""

    def __post_init__(self):
        if self.comm.rank == 0:
            with h5py.File(self.file_name, mode="w"):
                pass

    def write_step(
        self, step: int, time: float, data: np.ndarray, name: str = "state"
    ) -> None:
        global_data = self.gather(data)
        if self.comm.rank == 0:
            with h5py.File(self.file_name, mode="r+") as f:
                group = f.require_group(name)
                if str(step) in group:
                    del group[str(step)]
                dataset = group.create_dataset(str(step), data=global_data)
                dataset.attrs["time"] = time


@dataclass
class TXTFileWriter(FileWriterInterface):
    """
    File writer to write out to txt-files, one JSON object per line.
    """

    def __post_init__(self):
        if self.comm.rank == 0:
            with open(self.file_name, "w", encoding="utf-8"):
                pass

    def write_step(
        self, step: int, time: float, data: np.ndarray, name: str = "state"
    ) -> None:
        global_data = self.gather(data)
        if self.comm.rank == 0:
            data_dict = {"step": step, "time": time, name: global_data.tolist()}
            with open(self.file_name, "a", encoding="utf-8") as file_out:
                file_out.write(json.dumps(data_dict) + "\n")


def write_jacobian(path: str, jacobian, comm: Comm = COMM_WORLD) -> str:
    """
    Writes a Jacobian as dense text matrix. Complex matrices are written with their
    real part. With more than one process, every rank writes its own file with the
    rank appended to the path.

    Returns
    -------
    str
        Path of the written file.
    """
    if hasattr(jacobian, "toarray"):
        jacobian = jacobian.toarray()
    if comm.size > 1:
        path = f"{path}.{comm.rank}"
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    np.savetxt(path, np.real(np.atleast_2d(jacobian)))
    return path
