"""
utils/postprocess.py

Inference post-processing: confidence gate, class-offset NMS, letterbox un-map and clipping.
"""
from typing import List, Optional, Sequence, Union

import torch
import torchvision

from .boxes import xywh2xyxy, clip_boxes_
from .errors import ConfigError, ShapeMismatchError
from .letterbox import LetterboxContext
from .logging import get_logger, LogLevel
from .structures import DecodedPrediction, Detections

NMS_BACKENDS = ("greedy", "torchvision")


def _stable_score_order(scores):
    """Indices sorting scores descending; equal scores keep ascending index order."""
    return torch.sort(scores, descending=True, stable=True).indices


def greedy_nms(boxes: torch.Tensor, scores: torch.Tensor, iou_threshold: float) -> torch.Tensor:
    """
    Deterministic greedy NMS over xyxy boxes.

    Candidates are visited by descending score (ties: lower index first); a
    candidate is suppressed when its IoU with an already kept box is strictly
    greater than iou_threshold. Returns kept indices in visiting order.
    """
    if boxes.numel() == 0:
        return torch.empty((0, ), dtype=torch.long, device=boxes.device)
    x1, y1, x2, y2 = boxes.unbind(-1)
    areas = (x2 - x1).clamp(min=0) * (y2 - y1).clamp(min=0)
    order = _stable_score_order(scores)
    keep = []
    while order.numel() > 0:
        i = order[0]
        keep.append(i)
        if order.numel() == 1:
            break
        rest = order[1:]
        xx1 = torch.maximum(x1[i], x1[rest])
        yy1 = torch.maximum(y1[i], y1[rest])
        xx2 = torch.minimum(x2[i], x2[rest])
        yy2 = torch.minimum(y2[i], y2[rest])
        inter = (xx2 - xx1).clamp(min=0) * (yy2 - yy1).clamp(min=0)
        iou = inter / (areas[i] + areas[rest] - inter + 1e-7)
        order = rest[iou <= iou_threshold]
    return torch.stack(keep)


def torchvision_nms(boxes: torch.Tensor, scores: torch.Tensor, iou_threshold: float) -> torch.Tensor:
    """torchvision.ops.nms with its output re-ordered by the same deterministic key as greedy_nms."""
    if boxes.numel() == 0:
        return torch.empty((0, ), dtype=torch.long, device=boxes.device)
    keep = torchvision.ops.nms(boxes.float(), scores.float(), float(iou_threshold))
    keep = keep.sort().values
    return keep[_stable_score_order(scores[keep])]


def _per_image(letterbox, batch_size):
    if letterbox is None or isinstance(letterbox, LetterboxContext):
        return [letterbox] * batch_size
    letterbox = list(letterbox)
    if len(letterbox) != batch_size:
        raise ShapeMismatchError("letterbox contexts", declared=len(letterbox), expected=batch_size)
    return letterbox


@torch.no_grad()
def postprocess_detections(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    conf_thresh: float = 0.25,
    iou_thresh: float = 0.45,
    max_det: int = 300,
    max_nms: int = 30000,
    class_agnostic_nms: bool = False,
    letterbox: Union[None, LetterboxContext, Sequence[LetterboxContext]] = None,
    max_wh: float = 7680,
    nms_backend: str = "greedy",
    nms_free: bool = False,
    extra: Optional[torch.Tensor] = None,
) -> List[Detections]:
    """
    Turn decoded predictions into per-image detections.

    Args:
        boxes: [B, 4, N] centre-xywh boxes in network-input pixels
        scores: [B, C, N] class probabilities
        conf_thresh: keep candidates with best-class score strictly above this
        iou_thresh: suppress a candidate whose IoU with a kept box is strictly above this
        max_det: detections kept per image
        max_nms: candidates fed to NMS per image (highest scores first)
        class_agnostic_nms: when False, boxes of different classes never suppress each other
        letterbox: one context for the whole batch or one per image; None keeps input pixels
        max_wh: per-class coordinate offset, larger than any box coordinate
        nms_backend: "greedy" or "torchvision"
        nms_free: skip suppression (end-to-end heads) and drop boxes that clip to zero area
        extra: [B, E, N] task channels gathered alongside the kept anchors

    Returns:
        List of Detections, one per image, sorted by descending score.
    """
    if nms_backend not in NMS_BACKENDS:
        raise ConfigError(f"nms_backend must be one of {NMS_BACKENDS}, got {nms_backend!r}")
    if boxes.dim() != 3 or boxes.shape[1] != 4:
        raise ShapeMismatchError("decoded boxes", declared=tuple(boxes.shape), expected="(B, 4, N)")
    B, _, N = boxes.shape
    if scores.shape[0] != B or scores.shape[2] != N:
        raise ShapeMismatchError("scores", declared=tuple(scores.shape), expected=(B, "C", N))
    contexts = _per_image(letterbox, B)
    nms_fn = greedy_nms if nms_backend == "greedy" else torchvision_nms
    extra_ch = 0 if extra is None else extra.shape[1]

    boxes_xyxy = xywh2xyxy(boxes.transpose(1, 2))  # (B,N,4)
    if scores.shape[1] > 0:
        conf_all, cls_all = scores.max(1)  # (B,N)
    else:
        conf_all = boxes.new_zeros((B, N))
        cls_all = torch.zeros((B, N), dtype=torch.long, device=boxes.device)

    out = []
    for b in range(B):
        cand = torch.nonzero(conf_all[b] > conf_thresh, as_tuple=False).squeeze(1)
        if cand.numel() == 0:
            out.append(Detections.empty(boxes.device, boxes.dtype, extra_ch))
            continue
        if cand.numel() > max_nms:
            cand = cand[_stable_score_order(conf_all[b, cand])[:max_nms]]

        bx = boxes_xyxy[b, cand]
        sc = conf_all[b, cand]
        cl = cls_all[b, cand]

        if nms_free:
            keep = _stable_score_order(sc)
        else:
            offsets = torch.zeros_like(sc) if class_agnostic_nms else cl.to(bx.dtype) * max_wh
            keep = nms_fn(bx + offsets[:, None], sc, iou_thresh)
        keep = keep[:max_det]

        det_boxes = bx[keep].clone()
        det_scores = sc[keep]
        det_cls = cl[keep]
        det_extra = extra[b][:, cand[keep]].t() if extra is not None else None

        ctx = contexts[b]
        if ctx is not None:
            det_boxes = ctx.unmap_boxes(det_boxes)
        if nms_free:
            ok = (det_boxes[:, 2] > det_boxes[:, 0]) & (det_boxes[:, 3] > det_boxes[:, 1])
            det_boxes, det_scores, det_cls = det_boxes[ok], det_scores[ok], det_cls[ok]
            det_extra = det_extra[ok] if det_extra is not None else None
        out.append(Detections(det_boxes, det_scores, det_cls, det_extra))

    log = get_logger()
    if log.is_enabled(LogLevel.DEBUG):
        log.debug("postprocess/detections", {"per_image": [len(d) for d in out]})
    return out


class Postprocessor:
    """
    Holds post-processing settings so every caller applies the same thresholds.

    Args:
        cfg: YOLOConfig or dict carrying the postprocess keys
        **overrides: individual settings taking priority over cfg
    """
    REQUIRED_KEYS = ("conf_thresh", "iou_thresh", "max_det", "max_nms", "class_agnostic_nms")

    def __init__(self, cfg=None, **overrides):
        if hasattr(cfg, 'postprocess_config'):
            pp = dict(cfg.postprocess_config)
        else:
            pp = dict(cfg or {})
        pp.update(overrides)
        for k in self.REQUIRED_KEYS:
            if k not in pp:
                raise ConfigError(f"postprocess missing {k} in config")

        self.conf_thresh = float(pp['conf_thresh'])
        self.iou_thresh = float(pp['iou_thresh'])
        self.max_det = int(pp['max_det'])
        self.max_nms = int(pp['max_nms'])
        self.class_agnostic_nms = bool(pp['class_agnostic_nms'])
        self.max_wh = float(pp.get('max_wh', 7680))
        self.nms_backend = str(pp.get('nms_backend', 'greedy'))
        self.nms_free = bool(pp.get('nms_free', False))

        if self.conf_thresh < 0 or self.iou_thresh < 0:
            raise ConfigError(
                f"thresholds must be non-negative, got conf={self.conf_thresh} iou={self.iou_thresh}"
            )
        if self.max_det < 1 or self.max_nms < 1:
            raise ConfigError(f"max_det and max_nms must be >= 1, got {self.max_det}, {self.max_nms}")
        if self.nms_backend not in NMS_BACKENDS:
            raise ConfigError(f"nms_backend must be one of {NMS_BACKENDS}, got {self.nms_backend!r}")

    def __call__(self, decoded: DecodedPrediction, letterbox=None) -> List[Detections]:
        return postprocess_detections(
            decoded.boxes,
            decoded.scores,
            conf_thresh=self.conf_thresh,
            iou_thresh=self.iou_thresh,
            max_det=self.max_det,
            max_nms=self.max_nms,
            class_agnostic_nms=self.class_agnostic_nms,
            letterbox=letterbox,
            max_wh=self.max_wh,
            nms_backend=self.nms_backend,
            nms_free=self.nms_free,
            extra=decoded.extra,
        )
