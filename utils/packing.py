"""
utils/packing.py

Channel layout of raw head outputs. Per level the head emits
[4*reg_max box-distribution | nc class logits | extra task channels] on dim 1,
either fused in one tensor or as separate (box, cls[, extra]) tensors.
Levels are flattened row-major and concatenated in pyramid order.
"""
import torch

from .errors import ShapeMismatchError
from .geometry import normalize_sizes


class PackedLayout:
    def __init__(self, nc: int, reg_max: int, extra: int = 0):
        self.nc = int(nc)
        self.reg_max = int(reg_max)
        self.extra = int(extra)

    @property
    def box_channels(self):
        return 4 * self.reg_max

    @property
    def no(self):
        """Channels per anchor."""
        return self.box_channels + self.nc + self.extra

    def __repr__(self):
        return f"PackedLayout(nc={self.nc}, reg_max={self.reg_max}, extra={self.extra})"

    def split(self, x: torch.Tensor, dim: int = 1):
        """Split a fused tensor into (box, cls, extra); extra is None when the layout has none."""
        if x.shape[dim] != self.no:
            raise ShapeMismatchError("packed channels", declared=x.shape[dim], expected=self.no)
        box, cls, extra = x.split((self.box_channels, self.nc, self.extra), dim)
        return box, cls, (extra if self.extra else None)

    def _level_parts(self, feat, level):
        if isinstance(feat, torch.Tensor):
            if feat.dim() != 4:
                raise ShapeMismatchError(f"level {level} rank", declared=feat.dim(), expected=4)
            return self.split(feat, dim=1)
        parts = list(feat)
        if len(parts) not in (2, 3):
            raise ShapeMismatchError(f"level {level} parts", declared=len(parts), expected="2 or 3")
        box, cls = parts[0], parts[1]
        extra = parts[2] if len(parts) == 3 else None
        for name, t, ch in (("box", box, self.box_channels), ("cls", cls, self.nc)):
            if t.dim() != 4:
                raise ShapeMismatchError(f"level {level} {name} rank", declared=t.dim(), expected=4)
            if t.shape[1] != ch:
                raise ShapeMismatchError(f"level {level} {name} channels", declared=t.shape[1], expected=ch)
        got_extra = 0 if extra is None else extra.shape[1]
        if got_extra != self.extra:
            raise ShapeMismatchError(f"level {level} extra channels", declared=got_extra, expected=self.extra)
        return box, cls, extra

    def flatten_levels(self, feats, sizes=None):
        """
        Flatten per-level head outputs into channel-major concatenations.

        Args:
            feats: list of fused [B, no, H, W] tensors or (box, cls[, extra]) tuples.
            sizes: declared per-level (h, w); checked against the tensors when given.

        Returns:
            box [B, 4*reg_max, N], cls [B, nc, N], extra [B, extra, N] or None,
            and the per-level sizes.
        """
        if sizes is not None:
            sizes = normalize_sizes(sizes)
            if len(sizes) != len(feats):
                raise ShapeMismatchError("level count", declared=len(feats), expected=len(sizes))

        boxes, clss, extras, found, batch = [], [], [], [], None
        for i, feat in enumerate(feats):
            box, cls, extra = self._level_parts(feat, i)
            b, _, h, w = box.shape
            if batch is None:
                batch = b
            if b != batch or cls.shape[0] != batch or tuple(cls.shape[2:]) != (h, w):
                raise ShapeMismatchError(f"level {i} batch/spatial", declared=tuple(cls.shape),
                                         expected=(batch, self.nc, h, w))
            if sizes is not None and sizes[i] != (h, w):
                raise ShapeMismatchError(f"level {i} size", declared=(h, w), expected=sizes[i])
            found.append((h, w))
            boxes.append(box.reshape(b, self.box_channels, h * w))
            clss.append(cls.reshape(b, self.nc, h * w))
            if extra is not None:
                extras.append(extra.reshape(b, self.extra, h * w))

        if not boxes:
            raise ShapeMismatchError("head output has no levels", declared=0, expected=">= 1")
        extra_cat = torch.cat(extras, 2) if extras else None
        return torch.cat(boxes, 2), torch.cat(clss, 2), extra_cat, tuple(found)


def to_anchor_major(x: torch.Tensor) -> torch.Tensor:
    """[B, C, N] -> [B, N, C]"""
    return x.permute(0, 2, 1).contiguous()


def to_channel_major(x: torch.Tensor) -> torch.Tensor:
    """[B, N, C] -> [B, C, N]"""
    return x.permute(0, 2, 1).contiguous()
