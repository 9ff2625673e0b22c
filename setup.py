from pathlib import Path
from setuptools import setup, find_packages


this_dir = Path(__file__).parent
long_description = (this_dir / "README.md").read_text()
setup(
    name="cnadjoint",
    version="0.1",
    description=(
        "Newton solvers and discrete adjoints of Crank-Nicolson time integration, "
        "with an interface to OpenMDAO"
    ),
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages("src"),
    package_dir={"": "src"},
    install_requires=[
        "openmdao",
        "scipy>=1.12",
        "numpy",
        "matplotlib",
        "h5py",
        "mpi4py",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-mpi",
            "pylint",
        ]
    },
)
