"""Define some types that do not fit into one particular module

In particular it enables barebone typechecking for the shape of numpy arrays

Note that most numpy functions return :python:`ndarray[Any, Any]`
i.e. the type is mostly useful to document intent to the developer.
"""

import os

# We just reexpose the abstract number types here
from numbers import Integral  # noqa: F401
from typing import NewType, TypeAlias, TypeVar

import numpy as np

# We want the dtype to behave covariant, i.e. if a
#  Vector[float] is allowed, then the more specific
#  Vector[float64] should also be allowed.
#: Type annotation of a generic covariant type.
T_dtype_co = TypeVar("T_dtype_co", bound=np.generic, covariant=True)

# Matrices and higher order tensors can only be declared with shape
# :code:`tuple[int, ...]` because of https://github.com/numpy/numpy/issues/27957

#: Type annotation of a vector.
Vector = np.ndarray[tuple[int], np.dtype[T_dtype_co]]
#: Type annotation of a matrix.
Matrix = np.ndarray[tuple[int, ...], np.dtype[T_dtype_co]]
#: Type annotation of a tensor.
Tensor3D = np.ndarray[tuple[int, ...], np.dtype[T_dtype_co]]
#: Type annotation of a tensor.
Tensor4D = np.ndarray[tuple[int, ...], np.dtype[T_dtype_co]]

#: Type annotation for pathlike objects.
PathLike: TypeAlias = str | os.PathLike


#: The index of a basis function of the primary basis.
AOIdx = NewType("AOIdx", int)

#: The index of a shell, either in the primary or the auxiliary basis.
ShellIdx = NewType("ShellIdx", int)

#: The combined index of an orbital pair :math:`(i, j)`.
#: For packed tensors this is :python:`ravel_symmetric(i, j)`,
#: for unpacked tensors :python:`ravel_C(i, j, ndim2)`.
PairIdx = NewType("PairIdx", int)
