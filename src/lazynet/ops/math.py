"""
Built-in kernels behind the Node operator overloads.

Every kernel accepts numpy arrays, torch tensors or plain Python numbers.
Backward functions follow the registry contract: ``backward(*args, dy)``
returns one derivative per positional argument.
"""

from __future__ import annotations

from typing import Any, Optional, Sequence, Tuple

import numpy as np

from lazynet.ops.registry import OperationRegistry
from lazynet.utils.arrays import is_torch_tensor, shape_of


def _namespace(*values: Any) -> Any:
    for value in values:
        if is_torch_tensor(value):
            import torch

            return torch
    return np


def _reduce_sum(x: Any, axis: Any, keepdims: bool) -> Any:
    if is_torch_tensor(x):
        if axis is None:
            out = x.sum()
            return out.reshape([1] * x.dim()) if keepdims else out
        return x.sum(dim=axis, keepdim=keepdims)
    return np.sum(x, axis=axis, keepdims=keepdims)


def _zeros_like(x: Any) -> Any:
    if is_torch_tensor(x):
        import torch

        return torch.zeros_like(x)
    return np.zeros(shape_of(x), dtype=np.result_type(x, np.float64))


def _swap_last(x: Any) -> Any:
    return x.swapaxes(-1, -2)


def _expand(x: Any, axis: int) -> Any:
    if is_torch_tensor(x):
        return x.unsqueeze(axis)
    return np.expand_dims(np.asarray(x), axis)


def _squeeze(x: Any, axis: int) -> Any:
    if is_torch_tensor(x):
        return x.squeeze(axis)
    return np.squeeze(x, axis)


def _unbroadcast(d: Any, like: Any) -> Any:
    """Sum ``d`` down to the shape of ``like`` (undo numpy broadcasting)."""
    target = shape_of(like)
    current = shape_of(d)
    if current == target:
        return d
    if len(current) < len(target):
        return _zeros_like(like) + d
    extra = len(current) - len(target)
    if extra:
        d = _reduce_sum(d, tuple(range(extra)), False)
    current = shape_of(d)
    axes = tuple(
        i for i, (want, have) in enumerate(zip(target, current)) if want == 1 and have != 1
    )
    if axes:
        d = _reduce_sum(d, axes, True)
    return d


def _normalize_axis(axis: Any, ndim: int) -> Tuple[int, ...]:
    if axis is None:
        return tuple(range(ndim))
    if isinstance(axis, int):
        axis = (axis,)
    return tuple(a % ndim if ndim else a for a in axis)


def _expand_reduced(dy: Any, like: Any, axis: Any, keepdims: bool) -> Any:
    ndim = len(shape_of(like))
    if not keepdims and ndim:
        for a in sorted(_normalize_axis(axis, ndim)):
            dy = dy.unsqueeze(a) if is_torch_tensor(dy) else np.expand_dims(dy, a)
    return _zeros_like(like) + dy


# elementwise arithmetic

def add_forward(a: Any, b: Any) -> Any:
    return a + b


def add_backward(a: Any, b: Any, dy: Any) -> Sequence[Any]:
    return _unbroadcast(dy, a), _unbroadcast(dy, b)


def sub_forward(a: Any, b: Any) -> Any:
    return a - b


def sub_backward(a: Any, b: Any, dy: Any) -> Sequence[Any]:
    return _unbroadcast(dy, a), _unbroadcast(-dy, b)


def mul_forward(a: Any, b: Any) -> Any:
    return a * b


def mul_backward(a: Any, b: Any, dy: Any) -> Sequence[Any]:
    return _unbroadcast(dy * b, a), _unbroadcast(dy * a, b)


def div_forward(a: Any, b: Any) -> Any:
    return a / b


def div_backward(a: Any, b: Any, dy: Any) -> Sequence[Any]:
    return _unbroadcast(dy / b, a), _unbroadcast(-dy * a / (b * b), b)


def pow_forward(a: Any, p: Any) -> Any:
    return a ** p


def pow_backward(a: Any, p: Any, dy: Any) -> Sequence[Optional[Any]]:
    # only the base is differentiable; use exp(p * log(a)) for a learnable exponent
    return _unbroadcast(dy * p * a ** (p - 1), a), None


def neg_forward(a: Any) -> Any:
    return -a


def neg_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (-dy,)


# linear algebra and shape

def matmul_forward(a: Any, b: Any) -> Any:
    return a @ b


def matmul_backward(a: Any, b: Any, dy: Any) -> Sequence[Any]:
    # 1-D operands are promoted to matrices the way matmul itself does
    a_vec = len(shape_of(a)) == 1
    b_vec = len(shape_of(b)) == 1
    a2 = _expand(a, 0) if a_vec else a
    b2 = _expand(b, -1) if b_vec else b
    dy2 = _expand(dy, -1) if b_vec else dy
    if a_vec:
        dy2 = _expand(dy2, -2)

    da = dy2 @ _swap_last(b2)
    db = _swap_last(a2) @ dy2
    if a_vec:
        da = _squeeze(da, -2)
    if b_vec:
        db = _squeeze(db, -1)
    return _unbroadcast(da, a), _unbroadcast(db, b)


def transpose_forward(a: Any) -> Any:
    return a.T


def transpose_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy.T,)


def reshape_forward(a: Any, shape: Any) -> Any:
    return a.reshape(shape)


def reshape_backward(a: Any, shape: Any, dy: Any) -> Sequence[Optional[Any]]:
    return dy.reshape(shape_of(a)), None


def getitem_forward(a: Any, index: Any) -> Any:
    return a[index]


def getitem_backward(a: Any, index: Any, dy: Any) -> Sequence[Optional[Any]]:
    da = _zeros_like(a)
    if is_torch_tensor(da):
        da[index] += dy
    else:
        np.add.at(da, index, dy)
    return da, None


# reductions

def sum_forward(a: Any, axis: Any = None, keepdims: bool = False) -> Any:
    return _reduce_sum(a, axis, keepdims)


def sum_backward(a: Any, dy: Any, axis: Any = None, keepdims: bool = False) -> Sequence[Any]:
    return (_expand_reduced(dy, a, axis, keepdims),)


def mean_forward(a: Any, axis: Any = None, keepdims: bool = False) -> Any:
    count = _reduced_count(a, axis)
    return _reduce_sum(a, axis, keepdims) / count


def mean_backward(a: Any, dy: Any, axis: Any = None, keepdims: bool = False) -> Sequence[Any]:
    count = _reduced_count(a, axis)
    return (_expand_reduced(dy, a, axis, keepdims) / count,)


def _reduced_count(a: Any, axis: Any) -> int:
    shape = shape_of(a)
    count = 1
    for ax in _normalize_axis(axis, len(shape)):
        count *= shape[ax]
    return max(count, 1)


# elementwise nonlinearities

def exp_forward(a: Any) -> Any:
    return _namespace(a).exp(a)


def exp_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy * _namespace(a).exp(a),)


def log_forward(a: Any) -> Any:
    return _namespace(a).log(a)


def log_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy / a,)


def sqrt_forward(a: Any) -> Any:
    return _namespace(a).sqrt(a)


def sqrt_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy * 0.5 / _namespace(a).sqrt(a),)


def abs_forward(a: Any) -> Any:
    return abs(a)


def abs_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy * _namespace(a).sign(a),)


def tanh_forward(a: Any) -> Any:
    return _namespace(a).tanh(a)


def tanh_backward(a: Any, dy: Any) -> Sequence[Any]:
    t = _namespace(a).tanh(a)
    return (dy * (1 - t * t),)


def sigmoid_forward(a: Any) -> Any:
    return 1 / (1 + _namespace(a).exp(-a))


def sigmoid_backward(a: Any, dy: Any) -> Sequence[Any]:
    s = sigmoid_forward(a)
    return (dy * s * (1 - s),)


def relu_forward(a: Any) -> Any:
    return a * (a > 0)


def relu_backward(a: Any, dy: Any) -> Sequence[Any]:
    return (dy * (a > 0),)


BUILTINS = OperationRegistry()
for _kind, _forward, _backward in (
    ("add", add_forward, add_backward),
    ("sub", sub_forward, sub_backward),
    ("mul", mul_forward, mul_backward),
    ("div", div_forward, div_backward),
    ("pow", pow_forward, pow_backward),
    ("neg", neg_forward, neg_backward),
    ("matmul", matmul_forward, matmul_backward),
    ("transpose", transpose_forward, transpose_backward),
    ("reshape", reshape_forward, reshape_backward),
    ("getitem", getitem_forward, getitem_backward),
    ("sum", sum_forward, sum_backward),
    ("mean", mean_forward, mean_backward),
    ("exp", exp_forward, exp_backward),
    ("log", log_forward, log_backward),
    ("sqrt", sqrt_forward, sqrt_backward),
    ("abs", abs_forward, abs_backward),
    ("tanh", tanh_forward, tanh_backward),
    ("sigmoid", sigmoid_forward, sigmoid_backward),
    ("relu", relu_forward, relu_backward),
):
    BUILTINS.register(_kind, _forward, _backward)


def default_registry() -> OperationRegistry:
    """Fresh registry holding the built-in kernels."""
    return BUILTINS.copy()
