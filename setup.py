from setuptools import find_packages, setup

setup(
    name="dfqtensor",
    version="0.1.0",
    description="Density-fitted and Cholesky three-index tensors with batched access",
    python_requires=">=3.10",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=[
        "numpy>=1.22",
        "scipy>=1.7",
        "pyscf>=2.0",
        "numba",
        "attrs",
        "cattrs",
        "pyyaml",
        "typing_extensions",
    ],
    extras_require={
        "mpi": ["mpi4py"],
        "test": ["pytest"],
    },
)
