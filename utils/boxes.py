"""
utils/boxes.py

Box format conversions and the distance <-> box transforms used by the DFL head.
All functions operate on the last dimension unless told otherwise.
"""
import torch


class BoundingBox:
    """
    Utility class for bounding box operations and format conversions.
    Groups the ltrb distance transforms shared by decode and loss.
    """
    @staticmethod
    def dist2bbox(distance, anchor_points, xywh=True, dim=-1):
        """Transform distance(ltrb) to box(xywh or xyxy)."""
        lt, rb = torch.split(distance, 2, dim)
        x1y1 = anchor_points - lt
        x2y2 = anchor_points + rb
        if xywh:
            c_xy = (x1y1 + x2y2) / 2
            wh = x2y2 - x1y1
            return torch.cat((c_xy, wh), dim)  # xywh bbox
        return torch.cat((x1y1, x2y2), dim)  # xyxy bbox

    @staticmethod
    def bbox2dist(anchor_points, bbox, max_dist):
        """
        Transform bbox(xyxy) to dist(ltrb), clamped to [0, max_dist - 0.01].

        The upper bound sits just below the last DFL bin so the right-hand
        interpolation bin always exists.
        """
        x1y1, x2y2 = torch.split(bbox, 2, -1)
        dist = torch.cat((anchor_points - x1y1, x2y2 - anchor_points), -1)
        return dist.clamp_(0, max_dist - 0.01)


def xywh2xyxy(x):
    """Convert cx,cy,w,h to x1,y1,x2,y2 along the last dim."""
    xy, wh = x[..., :2], x[..., 2:4]
    half = wh / 2
    return torch.cat((xy - half, xy + half), dim=-1)


def xyxy2xywh(x):
    """Convert x1,y1,x2,y2 to cx,cy,w,h along the last dim."""
    x1y1, x2y2 = x[..., :2], x[..., 2:4]
    return torch.cat(((x1y1 + x2y2) / 2, x2y2 - x1y1), dim=-1)


def clip_boxes_(boxes, shape):
    """Clamp xyxy boxes in place to an image of shape (h, w). Works on tensors and numpy arrays."""
    h, w = shape
    if isinstance(boxes, torch.Tensor):
        boxes[..., 0].clamp_(0, w)  # x1
        boxes[..., 1].clamp_(0, h)  # y1
        boxes[..., 2].clamp_(0, w)  # x2
        boxes[..., 3].clamp_(0, h)  # y2
    else:  # numpy
        boxes[..., [0, 2]] = boxes[..., [0, 2]].clip(0, w)  # x1, x2
        boxes[..., [1, 3]] = boxes[..., [1, 3]].clip(0, h)  # y1, y2
    return boxes
