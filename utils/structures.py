"""
utils/structures.py

Typed containers passed between decode, assignment, loss and post-processing.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import torch

from .boxes import xywh2xyxy
from .errors import ShapeMismatchError
from .geometry import AnchorTable


@dataclass
class DecodedPrediction:
    """
    boxes: [B, 4, N] centre-xywh in input pixels
    scores: [B, nc, N] sigmoid class probabilities
    raw_dist: [B, 4*reg_max, N] un-normalised DFL logits (needed by the loss)
    raw_cls: [B, nc, N] class logits
    extra: [B, E, N] task channels passed through untouched, or None
    """
    boxes: torch.Tensor
    scores: torch.Tensor
    raw_dist: torch.Tensor
    raw_cls: torch.Tensor
    anchors: AnchorTable
    extra: Optional[torch.Tensor] = None

    @property
    def batch_size(self):
        return self.boxes.shape[0]

    @property
    def num_anchors(self):
        return self.boxes.shape[2]

    def boxes_xyxy(self):
        """Anchor-major xyxy boxes [B, N, 4]."""
        return xywh2xyxy(self.boxes.transpose(1, 2))


@dataclass
class GroundTruthBatch:
    """
    Padded ground truth. labels [B, M] (int64), boxes [B, M, 4] xyxy input pixels,
    mask [B, M] (bool). Slots with mask False are never read.
    """
    labels: torch.Tensor
    boxes: torch.Tensor
    mask: torch.Tensor

    def __post_init__(self):
        if self.labels.dim() == 3:
            self.labels = self.labels.squeeze(-1)
        if self.mask.dim() == 3:
            self.mask = self.mask.squeeze(-1)
        self.labels = self.labels.long()
        self.mask = self.mask.bool()
        b, m = self.labels.shape
        if tuple(self.boxes.shape) != (b, m, 4):
            raise ShapeMismatchError("gt boxes", declared=tuple(self.boxes.shape), expected=(b, m, 4))
        if tuple(self.mask.shape) != (b, m):
            raise ShapeMismatchError("gt mask", declared=tuple(self.mask.shape), expected=(b, m))

    @property
    def batch_size(self):
        return self.labels.shape[0]

    @property
    def max_boxes(self):
        return self.labels.shape[1]

    def to(self, device):
        return GroundTruthBatch(self.labels.to(device), self.boxes.to(device), self.mask.to(device))

    @classmethod
    def from_lists(cls, labels_list, boxes_list, device=None, dtype=torch.float32):
        """
        Pad variable-length per-image GT into a batch.

        labels_list: per image [n_i] class ids; boxes_list: per image [n_i, 4] xyxy pixels.
        """
        if len(labels_list) != len(boxes_list):
            raise ShapeMismatchError("gt lists", declared=len(labels_list), expected=len(boxes_list))
        bs = len(labels_list)
        counts = [int(torch.as_tensor(l).numel()) for l in labels_list]
        m = max(counts, default=0)
        labels = torch.zeros((bs, m), dtype=torch.long, device=device)
        boxes = torch.zeros((bs, m, 4), dtype=dtype, device=device)
        mask = torch.zeros((bs, m), dtype=torch.bool, device=device)
        for i, (lab, box) in enumerate(zip(labels_list, boxes_list)):
            n = counts[i]
            if n == 0:
                continue
            box = torch.as_tensor(box, dtype=dtype, device=device).reshape(-1, 4)
            if box.shape[0] != n:
                raise ShapeMismatchError(f"gt image {i} boxes", declared=box.shape[0], expected=n)
            labels[i, :n] = torch.as_tensor(lab, device=device).reshape(-1).long()
            boxes[i, :n] = box
            mask[i, :n] = True
        return cls(labels, boxes, mask)

    @classmethod
    def empty(cls, batch_size, device=None, dtype=torch.float32):
        return cls(
            torch.zeros((batch_size, 0), dtype=torch.long, device=device),
            torch.zeros((batch_size, 0, 4), dtype=dtype, device=device),
            torch.zeros((batch_size, 0), dtype=torch.bool, device=device),
        )


@dataclass
class Assignment:
    """
    Per-anchor training targets.

    target_labels [B, N], target_boxes [B, N, 4] xyxy pixels, target_scores [B, N, nc],
    fg_mask [B, N] bool, matched_gt [B, N] (index into the padded GT, 0 for background),
    target_scores_sum: scalar tensor.
    """
    target_labels: torch.Tensor
    target_boxes: torch.Tensor
    target_scores: torch.Tensor
    fg_mask: torch.Tensor
    matched_gt: torch.Tensor
    target_scores_sum: torch.Tensor

    @property
    def num_foreground(self):
        return int(self.fg_mask.sum().item())


@dataclass
class Detections:
    """
    Detections for one image in original-image pixels, sorted by descending score.

    boxes [K, 4] xyxy, scores [K], classes [K] int64, extra [K, E] or None.
    """
    boxes: torch.Tensor
    scores: torch.Tensor
    classes: torch.Tensor
    extra: Optional[torch.Tensor] = None

    def __len__(self):
        return self.boxes.shape[0]

    def as_tensor(self):
        """[K, 6] rows of (x1, y1, x2, y2, score, class)."""
        return torch.cat(
            (self.boxes, self.scores[:, None], self.classes[:, None].to(self.boxes.dtype)), 1
        )

    def to_records(self) -> List[tuple]:
        return [
            (*(float(v) for v in b), float(s), int(c))
            for b, s, c in zip(self.boxes.tolist(), self.scores.tolist(), self.classes.tolist())
        ]

    @classmethod
    def empty(cls, device=None, dtype=torch.float32, extra_channels=0):
        extra = torch.zeros((0, extra_channels), device=device, dtype=dtype) if extra_channels else None
        return cls(
            torch.zeros((0, 4), device=device, dtype=dtype),
            torch.zeros((0, ), device=device, dtype=dtype),
            torch.zeros((0, ), device=device, dtype=torch.long),
            extra,
        )


@dataclass
class TrainOutput:
    loss: torch.Tensor
    items: Dict[str, float]
    assignment: Assignment
    components: torch.Tensor = field(default=None)  # [3] detached (box, cls, dfl)
