"""
utils/letterbox.py

Letterbox geometry: the forward map from original-image pixels into the square
network input, and its inverse used to place detections back on the original.

    input = original * ratio + (pad_x, pad_y)
"""
from dataclasses import dataclass

import numpy as np
import torch

from .boxes import clip_boxes_
from .errors import ConfigError


@dataclass(frozen=True)
class LetterboxContext:
    orig_w: int
    orig_h: int
    ratio: float
    pad_x: float
    pad_y: float
    input_size: int

    def __post_init__(self):
        if self.ratio <= 0:
            raise ConfigError(f"letterbox ratio must be positive, got {self.ratio}")
        if self.orig_w <= 0 or self.orig_h <= 0:
            raise ConfigError(f"original size must be positive, got {self.orig_w}x{self.orig_h}")

    @classmethod
    def from_shapes(cls, orig_w, orig_h, input_size, scaleup=False):
        """
        Context for resizing an orig_w x orig_h image into input_size x input_size,
        keeping aspect ratio and centring the padding. Without scaleup the image is
        only ever shrunk.
        """
        ratio = min(input_size / orig_h, input_size / orig_w)
        if not scaleup:
            ratio = min(ratio, 1.0)
        new_w = int(round(orig_w * ratio))
        new_h = int(round(orig_h * ratio))
        return cls(
            orig_w=int(orig_w),
            orig_h=int(orig_h),
            ratio=float(ratio),
            pad_x=(input_size - new_w) / 2.0,
            pad_y=(input_size - new_h) / 2.0,
            input_size=int(input_size),
        )

    @classmethod
    def identity(cls, input_size):
        return cls(int(input_size), int(input_size), 1.0, 0.0, 0.0, int(input_size))

    @property
    def resized_shape(self):
        """(h, w) of the image content inside the padded input."""
        return int(round(self.orig_h * self.ratio)), int(round(self.orig_w * self.ratio))

    def _offsets(self, boxes):
        pad = [self.pad_x, self.pad_y, self.pad_x, self.pad_y]
        if isinstance(boxes, torch.Tensor):
            return torch.tensor(pad, dtype=boxes.dtype, device=boxes.device)
        return np.asarray(pad, dtype=np.float64)

    def map_boxes(self, boxes):
        """Original-image xyxy -> network-input xyxy."""
        return boxes * self.ratio + self._offsets(boxes)

    def unmap_boxes(self, boxes, clip=True):
        """Network-input xyxy -> original-image xyxy, clipped to [0, W] x [0, H]."""
        out = (boxes - self._offsets(boxes)) / self.ratio
        if clip:
            clip_boxes_(out, (self.orig_h, self.orig_w))
        return out
