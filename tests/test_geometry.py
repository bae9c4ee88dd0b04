import math
import numpy as np
import pytest
import torch
from tests.config import DEVICE
from utils.boxes import BoundingBox, xywh2xyxy, xyxy2xywh, clip_boxes_
from utils.box_iou import bbox_iou_aligned, pairwise_box_iou
from utils.errors import ConfigError, ShapeMismatchError
from utils.geometry import make_anchors, level_slices, normalize_sizes


@pytest.mark.parametrize("sizes,strides", [
    ([(2, 3)], [8]),
    ([(4, 4), (2, 2), (1, 1)], [8, 16, 32]),
    ([(3, 5), (2, 3)], [4, 8]),
])
def test_anchor_identity(sizes, strides):
    """Each level contributes H*W points at (c+0.5, r+0.5), row-major, with its own stride."""
    table = make_anchors(sizes, strides, device=DEVICE)
    assert table.num_anchors == sum(h * w for h, w in sizes)
    for (h, w), s, sl in zip(sizes, strides, level_slices(sizes)):
        pts = table.points[sl].cpu()
        st = table.strides[sl].cpu()
        for k in range(h * w):
            r, c = divmod(k, w)
            assert pts[k].tolist() == [c + 0.5, r + 0.5], f"level stride {s} anchor {k}"
        assert torch.all(st == s)


def test_anchor_points_px():
    table = make_anchors([(2, 2)], [8])
    assert torch.allclose(table.points_px(), torch.tensor([[4., 4.], [12., 4.], [4., 12.], [12., 12.]]))


def test_make_anchors_rejects_mismatched_levels():
    with pytest.raises(ShapeMismatchError, match="pyramid level count"):
        make_anchors([(2, 2), (1, 1)], [8])


@pytest.mark.parametrize("strides", [[], [8, 8], [16, 8], [0, 8]])
def test_make_anchors_rejects_bad_strides(strides):
    with pytest.raises(ConfigError):
        make_anchors([(1, 1)] * max(len(strides), 1), strides)


def test_normalize_sizes_accepts_tensors_and_pairs():
    feats = [torch.zeros(1, 3, 4, 5), torch.Size([1, 3, 2, 3]), (1, 1)]
    assert normalize_sizes(feats) == ((4, 5), (2, 3), (1, 1))


def test_zero_size_level_gives_no_anchors():
    table = make_anchors([(0, 0), (1, 1)], [8, 16])
    assert table.num_anchors == 1
    assert table.points.shape == (1, 2)


def test_xywh_xyxy_round_trip():
    g = torch.Generator().manual_seed(0)
    xy = torch.rand(64, 2, generator=g) * 100
    wh = torch.rand(64, 2, generator=g) * 50 + 1
    boxes = torch.cat((xy, xy + wh), 1)
    back = xywh2xyxy(xyxy2xywh(boxes))
    assert torch.allclose(back, boxes, rtol=1e-5, atol=1e-4)


def test_distance_round_trip():
    """bbox2dist then dist2bbox recovers boxes whose sides lie inside [0, R-1]."""
    reg_max = 16
    g = torch.Generator().manual_seed(1)
    points = torch.rand(32, 2, generator=g) * 20 + 20
    ltrb = torch.rand(32, 4, generator=g) * (reg_max - 1.5) + 0.1
    boxes = torch.cat((points - ltrb[:, :2], points + ltrb[:, 2:]), 1)
    dist = BoundingBox.bbox2dist(points, boxes, reg_max - 1)
    back = BoundingBox.dist2bbox(dist, points, xywh=False)
    assert torch.allclose(back, boxes, atol=1e-4)


def test_bbox2dist_clamps_to_last_bin():
    point = torch.tensor([[10.0, 10.0]])
    box = torch.tensor([[-50.0, 12.0, 100.0, 20.0]])  # top side is behind the point
    dist = BoundingBox.bbox2dist(point, box, 15)
    assert dist.min() >= 0
    assert dist.max() <= 15 - 0.01 + 1e-6
    assert dist[0, 1] == 0


def test_clip_boxes_tensor_and_numpy():
    t = torch.tensor([[-5.0, -1.0, 700.0, 500.0]])
    clip_boxes_(t, (480, 640))
    assert t.tolist() == [[0.0, 0.0, 640.0, 480.0]]
    a = np.array([[-5.0, -1.0, 700.0, 500.0]])
    clip_boxes_(a, (480, 640))
    assert a.tolist() == [[0.0, 0.0, 640.0, 480.0]]


def test_pairwise_iou_bounds():
    g = torch.Generator().manual_seed(2)
    xy = torch.rand(2, 10, 2, generator=g) * 50
    a = torch.cat((xy, xy + torch.rand(2, 10, 2, generator=g) * 30 + 1), -1)
    xy = torch.rand(2, 7, 2, generator=g) * 50
    b = torch.cat((xy, xy + torch.rand(2, 7, 2, generator=g) * 30 + 1), -1)
    iou = pairwise_box_iou(a, b)
    assert iou.shape == (2, 10, 7)
    assert iou.min() >= 0 and iou.max() <= 1


def test_iou_identical_and_disjoint():
    a = torch.tensor([[0.0, 0.0, 10.0, 10.0]])
    b = torch.tensor([[20.0, 20.0, 30.0, 30.0]])
    assert torch.allclose(pairwise_box_iou(a, a), torch.ones(1, 1), atol=1e-6)
    assert pairwise_box_iou(a, b).item() == 0.0
    for kind in ("IoU", "GIoU", "DIoU", "CIoU"):
        assert abs(bbox_iou_aligned(a, a, iou_type=kind).item() - 1.0) < 1e-5, kind


@pytest.mark.parametrize("side", [0.01, 10.0])
def test_identical_box_iou_tolerance(side):
    """Self-IoU is area / (area + eps): 1 to within eps / area."""
    eps = 1e-7
    a = torch.tensor([[5.0, 5.0, 5.0 + side, 5.0 + side]], dtype=torch.float64)
    area = side * side
    expected = area / (area + eps)
    for iou in (pairwise_box_iou(a, a, eps=eps)[0, 0], bbox_iou_aligned(a, a, iou_type="IoU", eps=eps)[0]):
        assert math.isclose(iou.item(), expected, rel_tol=1e-9)
        assert 0 <= 1 - iou.item() <= eps / area


def test_ciou_equals_iou_for_concentric_similar_boxes():
    """Same centre and aspect ratio: no distance or shape penalty."""
    a = torch.tensor([0.0, 0.0, 10.0, 10.0])
    b = torch.tensor([2.0, 2.0, 8.0, 8.0])
    iou = bbox_iou_aligned(a, b, iou_type="IoU")
    ciou = bbox_iou_aligned(a, b, iou_type="ciou")
    assert math.isclose(iou.item(), 0.36, rel_tol=1e-5)
    assert math.isclose(ciou.item(), iou.item(), rel_tol=1e-5)


def test_penalised_variants_are_bounded():
    a = torch.tensor([[0.0, 0.0, 10.0, 10.0], [0.0, 0.0, 4.0, 20.0]])
    b = torch.tensor([[50.0, 50.0, 60.0, 60.0], [1.0, 1.0, 30.0, 3.0]])
    for kind in ("GIoU", "DIoU", "CIoU"):
        v = bbox_iou_aligned(a, b, iou_type=kind)
        assert v.min() >= -1 and v.max() <= 1, kind
        assert torch.all(v <= bbox_iou_aligned(a, b, iou_type="IoU") + 1e-6), kind


def test_unknown_iou_type():
    box = torch.tensor([0.0, 0.0, 1.0, 1.0])
    with pytest.raises(ValueError, match="Unsupported IoU type"):
        bbox_iou_aligned(box, box, iou_type="SIoU")
