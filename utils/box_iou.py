import math
import torch

__all__ = ("bbox_iou_aligned", "pairwise_box_iou", "IOU_TYPES")

IOU_TYPES = ("IoU", "GIoU", "DIoU", "CIoU")


def pairwise_box_iou(box1: torch.Tensor, box2: torch.Tensor, eps: float = 1e-7) -> torch.Tensor:
    """
    Pairwise IoU for xyxy boxes: (..., N, 4) x (..., M, 4) -> (..., N, M).
    Leading batch dims must match.

    Identical boxes of area A score A / (A + eps), so the result is 1 only to within eps / A;
    sub-pixel boxes fall measurably short of 1.
    """
    (a1, a2), (b1, b2) = box1.unsqueeze(-2).chunk(2, -1), box2.unsqueeze(-3).chunk(2, -1)
    inter = (torch.min(a2, b2) - torch.max(a1, b1)).clamp(0).prod(-1)
    area1 = (a2 - a1).clamp(0).prod(-1)
    area2 = (b2 - b1).clamp(0).prod(-1)
    return inter / (area1 + area2 - inter + eps)  # NxM


def _aligned_iou_xyxy(b1, b2, eps=1e-7):
    b1_x1, b1_y1, b1_x2, b1_y2 = b1.unbind(-1)
    b2_x1, b2_y1, b2_x2, b2_y2 = b2.unbind(-1)
    # negative extents collapse to zero area
    w1 = (b1_x2 - b1_x1).clamp(min=0)
    h1 = (b1_y2 - b1_y1).clamp(min=0)
    w2 = (b2_x2 - b2_x1).clamp(min=0)
    h2 = (b2_y2 - b2_y1).clamp(min=0)
    inter = (torch.min(b1_x2, b2_x2) - torch.max(b1_x1, b2_x1)).clamp(0) * \
            (torch.min(b1_y2, b2_y2) - torch.max(b1_y1, b2_y1)).clamp(0)
    union = w1 * h1 + w2 * h2 - inter
    iou = inter / (union + eps)
    return iou, (w1, h1, w2, h2), union


def _apply_variant(iou, b1, b2, w1, h1, w2, h2, union, kind, eps=1e-7):
    if kind == "IoU":
        return iou
    b1_x1, b1_y1, b1_x2, b1_y2 = b1.unbind(-1)
    b2_x1, b2_y1, b2_x2, b2_y2 = b2.unbind(-1)
    cw = torch.max(b1_x2, b2_x2) - torch.min(b1_x1, b2_x1)  # enclosing box width
    ch = torch.max(b1_y2, b2_y2) - torch.min(b1_y1, b2_y1)

    if kind == "GIoU":
        c_area = cw * ch + eps
        return iou - (c_area - union) / c_area

    c2 = cw.pow(2) + ch.pow(2) + eps
    rho2 = ((b2_x1 + b2_x2 - b1_x1 - b1_x2).pow(2) + (b2_y1 + b2_y2 - b1_y1 - b1_y2).pow(2)) / 4
    if kind == "DIoU":
        return iou - rho2 / c2

    v = (4.0 / math.pi**2) * (torch.atan(w2 / (h2 + eps)) - torch.atan(w1 / (h1 + eps))).pow(2)
    with torch.no_grad():
        alpha = v / (v - iou + (1.0 + eps))
    return iou - (rho2 / c2 + v * alpha)


def bbox_iou_aligned(b1, b2, iou_type="CIoU", eps=1e-7):
    """
    Calculates the aligned intersection over union (IoU) of two sets of bounding boxes.

    Args:
        b1 (torch.Tensor): A tensor of shape (..., 4) representing bounding boxes in xyxy format.
        b2 (torch.Tensor): A tensor of shape (..., 4) representing bounding boxes in xyxy format.
        iou_type (str, optional): One of "IoU", "GIoU", "DIoU" or "CIoU". Defaults to "CIoU".
        eps (float, optional): A small value to avoid division by zero. Defaults to 1e-7.

    Returns:
        (torch.Tensor): A tensor of shape (...,) with the score of each aligned pair.
            Plain IoU lies in [0, 1]; the penalised variants lie in [-1, 1].
            Identical boxes of area A give IoU = A / (A + eps), i.e. 1 within eps / A.
    """
    kind = {t.upper(): t for t in IOU_TYPES}.get(str(iou_type).upper())
    if kind is None:
        raise ValueError(f"Unsupported IoU type: {iou_type!r}, expected one of {IOU_TYPES}")
    iou, (w1, h1, w2, h2), union = _aligned_iou_xyxy(b1, b2, eps)
    return _apply_variant(iou, b1, b2, w1, h1, w2, h2, union, kind, eps=eps)
