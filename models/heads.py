"""
models/heads.py

Decoding of raw head outputs and the task head variants built on top of it.

Every variant shares one DecodeHead: DFL integral, anchor-relative box decode
and sigmoid class scores. Task variants only declare how many extra channels
follow the class logits and under which name they are passed through.
"""
from enum import Enum
from typing import Dict, Optional

import torch
import torch.nn as nn

from utils.errors import ShapeMismatchError
from utils.geometry import DFLIntegral, AnchorTable, decode_distances, make_anchors, validate_strides
from utils.packing import PackedLayout
from utils.structures import DecodedPrediction


class DecodeHead(nn.Module):
    """
    Turns per-level raw outputs into pixel-space boxes and class probabilities.

    Args:
        nc: number of classes
        reg_max: DFL bins per side
        strides: per-level strides, positive and strictly increasing
        extra: task channels that follow the class logits
        grid_offset: anchor offset inside a cell
    """
    def __init__(self, nc=80, reg_max=16, strides=(8, 16, 32), extra=0, grid_offset=0.5):
        super().__init__()
        self.layout = PackedLayout(nc, reg_max, extra)
        self.strides = validate_strides(strides)
        self.grid_offset = float(grid_offset)
        self.dfl = DFLIntegral(reg_max)

    @property
    def nc(self):
        return self.layout.nc

    @property
    def reg_max(self):
        return self.layout.reg_max

    def anchors_for(self, sizes, device=None, dtype=torch.float32) -> AnchorTable:
        return make_anchors(sizes, self.strides, self.grid_offset, device=device, dtype=dtype)

    def decode(self, feats, sizes=None, anchors: Optional[AnchorTable] = None) -> DecodedPrediction:
        """
        Args:
            feats: per-level fused tensors or (box, cls[, extra]) tuples.
            sizes: declared per-level (h, w); defaults to the tensors' own sizes.
            anchors: precomputed AnchorTable for these sizes; built on the fly when None.
        """
        box, cls, extra, found = self.layout.flatten_levels(feats, sizes)
        if len(found) != len(self.strides):
            raise ShapeMismatchError("pyramid levels", declared=len(found), expected=len(self.strides))
        dtype = box.dtype if box.is_floating_point() else torch.float32
        if anchors is None:
            anchors = self.anchors_for(found, device=box.device, dtype=dtype)
        if anchors.num_anchors != box.shape[2]:
            raise ShapeMismatchError("anchor count", declared=box.shape[2], expected=anchors.num_anchors)

        dist = self.dfl(box)
        boxes = decode_distances(anchors, dist, xywh=True)
        return DecodedPrediction(
            boxes=boxes, scores=cls.sigmoid(), raw_dist=box, raw_cls=cls, anchors=anchors, extra=extra
        )

    forward = decode


class HeadKind(str, Enum):
    DETECT = "detect"
    SEGMENT = "segment"
    POSE = "pose"
    OBB = "obb"


# name under which each variant exposes its pass-through channels
EXTRA_NAMES = {
    HeadKind.DETECT: None,
    HeadKind.SEGMENT: "mask_coeffs",
    HeadKind.POSE: "keypoints",
    HeadKind.OBB: "angle",
}


def extra_channels(kind, nm=32, kpt_shape=(17, 3), ne=1):
    kind = HeadKind(kind)
    if kind is HeadKind.SEGMENT:
        return int(nm)
    if kind is HeadKind.POSE:
        return int(kpt_shape[0]) * int(kpt_shape[1])
    if kind is HeadKind.OBB:
        return int(ne)
    return 0


class TaskHead(nn.Module):
    """
    Tagged head variant wrapping the shared DecodeHead.

    detect: no extra channels
    segment: nm mask coefficients per anchor (prototype masks live outside the core)
    pose: nkpt*ndim raw keypoint channels, passed through without decoding
    obb: ne raw angle channels
    """
    def __init__(self, kind="detect", nc=80, reg_max=16, strides=(8, 16, 32), nm=32,
                 kpt_shape=(17, 3), ne=1, grid_offset=0.5):
        super().__init__()
        self.kind = HeadKind(kind)
        self.kpt_shape = tuple(int(k) for k in kpt_shape)
        self.decoder = DecodeHead(
            nc, reg_max, strides, extra=extra_channels(self.kind, nm, kpt_shape, ne), grid_offset=grid_offset
        )

    @classmethod
    def from_config(cls, cfg):
        """Build from a YOLOConfig (or plain dict with the same keys)."""
        get = cfg.get
        head = get("head") or {}
        return cls(
            kind=head.get("kind", "detect"),
            nc=int(get("nc")),
            reg_max=int(get("reg_max")),
            strides=get("strides"),
            nm=head.get("nm", 32),
            kpt_shape=head.get("kpt_shape", (17, 3)),
            ne=head.get("ne", 1),
            grid_offset=get("grid_offset", 0.5),
        )

    @property
    def layout(self) -> PackedLayout:
        return self.decoder.layout

    @property
    def strides(self):
        return self.decoder.strides

    def forward(self, feats, sizes=None, anchors=None) -> DecodedPrediction:
        return self.decoder.decode(feats, sizes=sizes, anchors=anchors)

    def task_outputs(self, decoded: DecodedPrediction) -> Dict[str, torch.Tensor]:
        """Named pass-through channels of this variant, [B, E, N] each; empty for detect."""
        name = EXTRA_NAMES[self.kind]
        if name is None or decoded.extra is None:
            return {}
        return {name: decoded.extra}
