import torch
import torch.nn as nn
import torch.nn.functional as F
from utils.box_iou import bbox_iou_aligned
from .boxes import BoundingBox
from .errors import ConfigError, ShapeMismatchError
from utils.logging import get_logger, LogLevel
from .assigner import TaskAlignedAssigner
from .packing import to_anchor_major
from .structures import Assignment, DecodedPrediction, GroundTruthBatch

LOSS_NAMES = ("box", "cls", "dfl")


class DetectionLoss(nn.Module):
    """
    Composite detection loss: BCE classification, IoU-family box regression and
    distribution focal loss, all normalised by max(sum of target scores, 1).

    Call with a DecodedPrediction (raw logits and decoded boxes from the same
    forward) and a padded GroundTruthBatch. Returns (total, items) where items is
    a detached [3] tensor ordered (box, cls, dfl).
    """
    def __init__(self, nc=80, reg_max=16, box=7.5, cls=0.5, dfl=1.5, iou_type="CIoU", assigner=None):
        super().__init__()
        if int(reg_max) < 1:
            raise ConfigError(f"reg_max must be >= 1, got {reg_max}")
        self.nc = int(nc)
        self.reg_max = int(reg_max)
        self.box_weight = float(box)
        self.cls_weight = float(cls)
        self.dfl_weight = float(dfl)
        self.iou_type = iou_type
        self.use_dfl = self.reg_max > 1
        self.bce = nn.BCEWithLogitsLoss(reduction='none')
        self.assigner = assigner if assigner is not None else TaskAlignedAssigner(num_classes=self.nc)

    @classmethod
    def from_config(cls, cfg):
        w = cfg.loss_weights
        return cls(
            nc=int(cfg.get("nc")),
            reg_max=int(cfg.get("reg_max")),
            box=w["box"],
            cls=w["cls"],
            dfl=w["dfl"],
            iou_type=cfg.get("iou_type", "CIoU"),
            assigner=TaskAlignedAssigner.from_config(cfg),
        )

    @staticmethod
    def pack_targets(gt_labels_list, gt_bboxes_list, device=None):
        """Pad per-image (labels [n_i], xyxy boxes [n_i, 4]) lists into a GroundTruthBatch."""
        return GroundTruthBatch.from_lists(gt_labels_list, gt_bboxes_list, device=device)

    def assign(self, pred: DecodedPrediction, gt: GroundTruthBatch) -> Assignment:
        pd_scores = to_anchor_major(pred.scores).detach()
        pd_bboxes = pred.boxes_xyxy().detach()
        return self.assigner(pd_scores, pd_bboxes, pred.anchors.points_px(), gt.to(pd_bboxes.device))

    def forward(self, pred: DecodedPrediction, gt: GroundTruthBatch, gains=None, assignment=None):
        if pred.raw_cls.shape[1] != self.nc:
            raise ShapeMismatchError("class channels", declared=pred.raw_cls.shape[1], expected=self.nc)
        if pred.raw_dist.shape[1] != 4 * self.reg_max:
            raise ShapeMismatchError("box channels", declared=pred.raw_dist.shape[1], expected=4 * self.reg_max)
        if assignment is None:
            assignment = self.assign(pred, gt)

        gains = gains or {}
        g_box = float(gains.get("box", self.box_weight))
        g_cls = float(gains.get("cls", self.cls_weight))
        g_dfl = float(gains.get("dfl", self.dfl_weight))

        pred_logits = to_anchor_major(pred.raw_cls)  # (B,N,C)
        target_scores = assignment.target_scores.to(pred_logits.dtype)
        fg_mask = assignment.fg_mask
        denom = assignment.target_scores_sum.clamp(min=1).to(pred_logits.dtype)

        loss_cls = self.cls_loss(pred_logits, target_scores, denom)
        loss_box = self.box_loss(pred.boxes_xyxy(), assignment.target_boxes, target_scores, fg_mask, denom)
        if self.use_dfl:
            loss_dfl = self.dfl_loss(pred, assignment.target_boxes, target_scores, fg_mask, denom)
        else:
            loss_dfl = torch.zeros((), device=pred_logits.device, dtype=pred_logits.dtype)

        total = g_box * loss_box + g_cls * loss_cls + g_dfl * loss_dfl
        items = torch.stack((loss_box, loss_cls, loss_dfl)).detach()
        return total, items

    def cls_loss(self, pred_logits, target_scores, denom):
        """BCE-with-logits against soft target scores, summed over anchors and classes."""
        return self.bce(pred_logits, target_scores).sum() / denom

    def box_loss(self, pred_bboxes, target_bboxes, target_scores, fg_mask, denom):
        if not bool(fg_mask.any()):
            return torch.zeros((), device=pred_bboxes.device, dtype=pred_bboxes.dtype)
        weight = target_scores.sum(-1)[fg_mask]
        iou = bbox_iou_aligned(pred_bboxes[fg_mask], target_bboxes[fg_mask].to(pred_bboxes.dtype),
                               iou_type=self.iou_type)
        return ((1.0 - iou) * weight).sum() / denom

    def dfl_loss(self, pred: DecodedPrediction, target_bboxes, target_scores, fg_mask, denom):
        if not bool(fg_mask.any()):
            return torch.zeros((), device=pred.raw_dist.device, dtype=pred.raw_dist.dtype)
        anchors = pred.anchors
        # distances live in grid units: divide pixel targets by each anchor's stride
        target_grid = target_bboxes / anchors.strides.view(1, -1, 1)
        target_ltrb = BoundingBox.bbox2dist(anchors.points.unsqueeze(0), target_grid, self.reg_max - 1)

        pred_dist = to_anchor_major(pred.raw_dist)[fg_mask]  # (n, 4R)
        tgt = target_ltrb[fg_mask]  # (n, 4)
        self._log_clipped_targets(target_grid, anchors, fg_mask)

        n = pred_dist.shape[0]
        weight = target_scores.sum(-1)[fg_mask]
        return (self.distribution_focal_loss(pred_dist.view(n, 4, self.reg_max), tgt) * weight).sum() / denom

    def distribution_focal_loss(self, pred_dist, target):
        """
        Two-bin cross-entropy per side, averaged over the four sides.

        Args:
            pred_dist: [n, 4, reg_max] logits
            target: [n, 4] continuous distances in [0, reg_max - 1)

        Returns:
            [n] per-anchor loss
        """
        n = pred_dist.shape[0]
        logits = pred_dist.reshape(-1, self.reg_max).float()
        t = target.reshape(-1).float()
        tl = t.long()  # floor for non-negative targets
        tr = (tl + 1).clamp(max=self.reg_max - 1)
        wl = tl.float() + 1.0 - t
        wr = 1.0 - wl
        loss = (
            F.cross_entropy(logits, tl, reduction='none') * wl +
            F.cross_entropy(logits, tr, reduction='none') * wr
        )
        return loss.view(n, 4).mean(-1).to(pred_dist.dtype)

    def _log_clipped_targets(self, target_grid, anchors, fg_mask):
        log = get_logger()
        if not log.is_enabled(LogLevel.DEBUG):
            return
        with torch.no_grad():
            x1y1, x2y2 = target_grid.split(2, -1)
            pts = anchors.points.unsqueeze(0)
            raw = torch.cat((pts - x1y1, x2y2 - pts), -1)[fg_mask]
            clipped = ((raw < 0) | (raw > self.reg_max - 1.01)).float().mean().item()
        if clipped > 0:
            log.debug("loss/dfl_clipped_fraction", {"fraction": clipped, "reg_max": self.reg_max})
