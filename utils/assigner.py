import torch
import torch.nn as nn

from .box_iou import pairwise_box_iou
from .errors import ConfigError, ShapeMismatchError
from .logging import get_logger
from .structures import Assignment, GroundTruthBatch


class TaskAlignedAssigner(nn.Module):
    """
    TOOD-style task-aligned label assignment (alignment s^α · IoU^β, center-in-box, top-k).

    Box format: xyxy in input pixels. Inputs (B = batch, N = anchors, M = max GTs, C = classes):
      pd_scores:    (B,N,C)  class probabilities (sigmoid already applied)
      pd_bboxes:    (B,N,4)  decoded boxes
      anc_points:   (N,2)    anchor centres in pixels
      gt:           GroundTruthBatch with labels (B,M), boxes (B,M,4), mask (B,M)

    Ranking is deterministic: top-k ties go to the lower anchor index and
    multi-GT conflicts go to the highest IoU, then the lower GT index.
    GTs with non-positive area or an out-of-range class are masked out and logged.
    """
    def __init__(self, num_classes: int = 80, topk: int = 13, alpha: float = 0.5, beta: float = 6.0,
                 eps: float = 1e-9):
        super().__init__()
        if int(num_classes) < 1:
            raise ConfigError(f"num_classes must be >= 1, got {num_classes}")
        if int(topk) < 1:
            raise ConfigError(f"topk must be >= 1, got {topk}")
        self.num_classes = int(num_classes)
        self.topk = int(topk)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.eps = float(eps)

    @classmethod
    def from_config(cls, cfg):
        a = cfg.assigner_config
        return cls(num_classes=int(cfg.get("nc")), **a)

    @torch.no_grad()
    def forward(self, pd_scores, pd_bboxes, anc_points, gt: GroundTruthBatch) -> Assignment:
        B, N, C = pd_scores.shape
        if C != self.num_classes:
            raise ShapeMismatchError("assigner classes", declared=C, expected=self.num_classes)
        if tuple(pd_bboxes.shape) != (B, N, 4):
            raise ShapeMismatchError("predicted boxes", declared=tuple(pd_bboxes.shape), expected=(B, N, 4))
        if tuple(anc_points.shape) != (N, 2):
            raise ShapeMismatchError("anchor points", declared=tuple(anc_points.shape), expected=(N, 2))
        if gt.batch_size != B:
            raise ShapeMismatchError("gt batch", declared=gt.batch_size, expected=B)

        M = gt.max_boxes
        mask_gt = self._valid_gt_mask(gt)  # (B,M)
        if M == 0 or N == 0 or not bool(mask_gt.any()):
            return self._empty_return(B, N, C, pd_bboxes)

        gt_labels = torch.where(mask_gt, gt.labels, torch.zeros_like(gt.labels))
        gt_bboxes = gt.boxes.to(pd_bboxes.dtype)

        mask_in_gts = self._centers_in_boxes(anc_points, gt_bboxes)  # (B,M,N)
        valid_mask = mask_in_gts & mask_gt.unsqueeze(-1)
        align, ious = self._box_metrics(pd_scores, pd_bboxes, gt_labels, gt_bboxes, valid_mask)

        topk_mask = self._topk_mask(align, valid_mask)
        mask_pos = topk_mask & valid_mask  # (B,M,N)

        tgt_gt_idx, fg_mask, mask_pos = self._resolve_conflicts(mask_pos, ious)
        target_labels, target_bboxes = self._gather_targets(gt_labels, gt_bboxes, tgt_gt_idx)

        # rescale so each GT's best aligned anchor scores that GT's best matched IoU
        mask_pos_f = mask_pos.to(align.dtype)
        align = align * mask_pos_f
        pos_align = align.amax(dim=-1, keepdim=True)  # (B,M,1)
        pos_overlaps = (ious * mask_pos_f).amax(dim=-1, keepdim=True)  # (B,M,1)
        norm_align = (align * pos_overlaps / (pos_align + self.eps)).amax(dim=1)  # (B,N)

        onehot = self._one_hot(target_labels, self.num_classes, pd_scores.dtype)  # (B,N,C)
        target_scores = onehot * (norm_align * fg_mask).unsqueeze(-1)
        target_labels = torch.where(fg_mask, target_labels, torch.zeros_like(target_labels))
        target_bboxes = target_bboxes * fg_mask.unsqueeze(-1)
        tgt_gt_idx = torch.where(fg_mask, tgt_gt_idx, torch.zeros_like(tgt_gt_idx))

        return Assignment(
            target_labels=target_labels,
            target_boxes=target_bboxes,
            target_scores=target_scores,
            fg_mask=fg_mask,
            matched_gt=tgt_gt_idx,
            target_scores_sum=target_scores.sum(),
        )

    def _valid_gt_mask(self, gt: GroundTruthBatch):
        mask = gt.mask.clone()
        wh = gt.boxes[..., 2:4] - gt.boxes[..., 0:2]
        degenerate = mask & ((wh[..., 0] <= 0) | (wh[..., 1] <= 0))
        bad_label = mask & ((gt.labels < 0) | (gt.labels >= self.num_classes))
        n_deg, n_bad = int(degenerate.sum()), int(bad_label.sum())
        if n_deg:
            get_logger().warning("assigner/degenerate_gt", {"masked": n_deg})
        if n_bad:
            get_logger().warning("assigner/invalid_label", {"masked": n_bad, "nc": self.num_classes})
        return mask & ~degenerate & ~bad_label

    def _empty_return(self, B, N, C, pd_bboxes):
        device, dtype = pd_bboxes.device, pd_bboxes.dtype
        return Assignment(
            target_labels=torch.zeros((B, N), dtype=torch.long, device=device),
            target_boxes=torch.zeros((B, N, 4), dtype=dtype, device=device),
            target_scores=torch.zeros((B, N, C), dtype=dtype, device=device),
            fg_mask=torch.zeros((B, N), dtype=torch.bool, device=device),
            matched_gt=torch.zeros((B, N), dtype=torch.long, device=device),
            target_scores_sum=torch.zeros((), dtype=dtype, device=device),
        )

    def _centers_in_boxes(self, anc_points, gt_bboxes):
        """Anchors strictly inside each GT: (B,M,N) bool."""
        B, M, _ = gt_bboxes.shape
        N = anc_points.shape[0]
        lt = gt_bboxes[:, :, :2].unsqueeze(2)  # (B,M,1,2)
        rb = gt_bboxes[:, :, 2:4].unsqueeze(2)  # (B,M,1,2)
        ap = anc_points.to(gt_bboxes.dtype).view(1, 1, N, 2)
        deltas = torch.cat([ap - lt, rb - ap], dim=-1)  # (B,M,N,4)
        return deltas.amin(dim=-1) > self.eps

    def _box_metrics(self, pd_scores, pd_bboxes, gt_labels, gt_bboxes, valid_mask):
        B, N, C = pd_scores.shape
        M = gt_labels.shape[1]
        overlaps = pairwise_box_iou(gt_bboxes, pd_bboxes).clamp_(0)  # (B,M,N)
        idx = gt_labels.unsqueeze(1).expand(B, N, M)
        clsprob = pd_scores.gather(2, idx).transpose(1, 2)  # (B,M,N)
        overlaps = overlaps * valid_mask
        align = clsprob.pow(self.alpha) * overlaps.pow(self.beta) * valid_mask
        return align, overlaps

    def _topk_mask(self, metric, valid_mask):
        """Top-k anchors per GT row; stable sort keeps the lower anchor index on ties."""
        B, M, N = metric.shape
        k = min(self.topk, N)
        ranked = torch.where(valid_mask, metric, torch.full_like(metric, -1.0))
        order = torch.sort(ranked, dim=-1, descending=True, stable=True).indices[..., :k]
        mask = torch.zeros((B, M, N), dtype=torch.bool, device=metric.device)
        return mask.scatter_(-1, order, True)

    def _resolve_conflicts(self, mask_pos, overlaps):
        B, M, N = mask_pos.shape
        counts = mask_pos.sum(dim=1)  # (B,N)
        if bool((counts > 1).any()):
            multi = (counts > 1).unsqueeze(1).expand(-1, M, -1)
            # only GTs that selected the anchor compete; argmax takes the first (lowest) index on ties
            competing = torch.where(mask_pos, overlaps, torch.full_like(overlaps, -1.0))
            winner = competing.argmax(dim=1)  # (B,N)
            keep = torch.zeros_like(mask_pos)
            keep.scatter_(1, winner.unsqueeze(1), True)
            mask_pos = torch.where(multi, keep, mask_pos)
        fg_mask = mask_pos.any(dim=1)
        target_gt_idx = mask_pos.float().argmax(dim=1)
        return target_gt_idx, fg_mask, mask_pos

    def _gather_targets(self, gt_labels, gt_bboxes, target_gt_idx):
        B, M = gt_labels.shape
        batch_base = torch.arange(B, device=gt_labels.device)[:, None] * M
        flat_idx = (target_gt_idx + batch_base).view(-1)
        flat_labels = gt_labels.reshape(-1)[flat_idx]
        flat_boxes = gt_bboxes.reshape(-1, 4)[flat_idx]
        return flat_labels.view(B, -1).long(), flat_boxes.view(B, -1, 4)

    def _one_hot(self, labels: torch.Tensor, num_classes: int, dtype=torch.float32):
        B, N = labels.shape
        out = torch.zeros((B, N, num_classes), device=labels.device, dtype=dtype)
        return out.scatter_(-1, labels.clamp(0, num_classes - 1).unsqueeze(-1), 1.0)
