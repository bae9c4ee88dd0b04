"""
utils/geometry.py

Anchor-point generation and the DFL integral shared by decode and loss.
"""
from dataclasses import dataclass
from typing import Sequence, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from .boxes import BoundingBox
from .errors import ConfigError, ShapeMismatchError


def validate_strides(strides):
    """Strides must be positive and strictly increasing."""
    strides = [float(s) for s in strides]
    if not strides:
        raise ConfigError("strides must not be empty")
    if any(s <= 0 for s in strides):
        raise ConfigError(f"strides must be positive, got {strides}")
    if any(b <= a for a, b in zip(strides, strides[1:])):
        raise ConfigError(f"strides must be strictly increasing, got {strides}")
    return tuple(strides)


def normalize_sizes(sizes) -> Tuple[Tuple[int, int], ...]:
    """Accept (h, w) pairs, torch.Size objects or feature tensors and return ((h, w), ...)."""
    out = []
    for s in sizes:
        shape = s.shape if hasattr(s, "shape") else s
        h, w = int(shape[-2]), int(shape[-1])
        if h < 0 or w < 0:
            raise ShapeMismatchError("feature map size must be non-negative", declared=(h, w))
        out.append((h, w))
    return tuple(out)


@dataclass(frozen=True)
class AnchorTable:
    """
    Anchor centres in grid units and their per-anchor stride.

    points: [N, 2] as (x, y) = (col + offset, row + offset), row-major per level,
        levels concatenated in pyramid order.
    strides: [N, 1]
    """
    points: torch.Tensor
    strides: torch.Tensor
    sizes: Tuple[Tuple[int, int], ...]

    @property
    def num_anchors(self):
        return self.points.shape[0]

    @property
    def device(self):
        return self.points.device

    @property
    def dtype(self):
        return self.points.dtype

    @property
    def key(self):
        return (self.sizes, self.device, self.dtype)

    def points_px(self):
        """Anchor centres in input pixels."""
        return self.points * self.strides


def make_anchors(sizes, strides, offset=0.5, device=None, dtype=torch.float32) -> AnchorTable:
    """
    Generate anchor points for every cell of every pyramid level.

    Args:
        sizes: per-level (h, w) pairs, shapes or feature tensors.
        strides: per-level strides, same length as sizes.
        offset: cell-centre offset, 0.5 places anchors at cell centres.
    """
    sizes = normalize_sizes(sizes)
    strides = validate_strides(strides)
    if len(sizes) != len(strides):
        raise ShapeMismatchError("pyramid level count", declared=len(sizes), expected=len(strides))
    device = torch.device(device) if device is not None else torch.device("cpu")

    anchor_points, stride_tensor = [], []
    for (h, w), stride in zip(sizes, strides):
        sx = torch.arange(w, device=device, dtype=dtype) + offset
        sy = torch.arange(h, device=device, dtype=dtype) + offset
        sy, sx = torch.meshgrid(sy, sx, indexing='ij')
        anchor_points.append(torch.stack((sx, sy), -1).reshape(-1, 2))
        stride_tensor.append(torch.full((h * w, 1), stride, dtype=dtype, device=device))

    return AnchorTable(
        points=torch.cat(anchor_points),
        strides=torch.cat(stride_tensor),
        sizes=sizes,
    )


class DFLIntegral(nn.Module):
    """
    Distribution Focal Loss integral: softmax over reg_max bins per side, then
    the expectation against the fixed bin indices [0 .. reg_max - 1].

    The bin vector is a non-trainable buffer; it is never exposed as a parameter.
    Input [B, 4*reg_max, N] -> output [B, 4, N] in bin units.
    """
    def __init__(self, reg_max=16):
        super().__init__()
        reg_max = int(reg_max)
        if reg_max < 1:
            raise ConfigError(f"reg_max must be >= 1, got {reg_max}")
        self.reg_max = reg_max
        self.register_buffer("bins", torch.arange(reg_max, dtype=torch.float32), persistent=False)

    def forward(self, x):
        b, c, n = x.shape
        if c != 4 * self.reg_max:
            raise ShapeMismatchError("DFL channels", declared=c, expected=4 * self.reg_max)
        if self.reg_max == 1:
            return x
        p = F.softmax(x.reshape(b, 4, self.reg_max, n).float(), dim=2)
        bins = self.bins.to(device=p.device, dtype=p.dtype)
        dist = (p * bins.view(1, 1, -1, 1)).sum(2)
        return dist.to(x.dtype)


def decode_distances(anchors: AnchorTable, dist, xywh=True):
    """
    Turn per-anchor ltrb distances [B, 4, N] (grid units) into boxes [B, 4, N] in pixels.
    """
    boxes = BoundingBox.dist2bbox(dist, anchors.points.t().unsqueeze(0), xywh=xywh, dim=1)
    return boxes * anchors.strides.t().unsqueeze(0)


def level_slices(sizes: Sequence[Tuple[int, int]]):
    """Anchor index ranges covered by each pyramid level."""
    out, start = [], 0
    for h, w in sizes:
        out.append(slice(start, start + h * w))
        start += h * w
    return out
