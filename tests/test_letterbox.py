import numpy as np
import pytest
import torch
from utils.errors import ConfigError
from utils.letterbox import LetterboxContext


def test_landscape_image_is_padded_vertically():
    ctx = LetterboxContext.from_shapes(640, 480, 640)
    assert ctx.ratio == 1.0
    assert (ctx.pad_x, ctx.pad_y) == (0.0, 80.0)
    assert ctx.resized_shape == (480, 640)


def test_composite_unmap():
    ctx = LetterboxContext(orig_w=640, orig_h=480, ratio=1.0, pad_x=0.0, pad_y=80.0, input_size=640)
    out = ctx.unmap_boxes(torch.tensor([[100.0, 160.0, 300.0, 320.0]]))
    assert out.tolist() == [[100.0, 80.0, 300.0, 240.0]]


@pytest.mark.parametrize("orig,scaleup", [((1280, 720), False), ((300, 500), True), ((300, 500), False)])
def test_map_then_unmap_recovers_original(orig, scaleup):
    w, h = orig
    ctx = LetterboxContext.from_shapes(w, h, 640, scaleup=scaleup)
    g = torch.Generator().manual_seed(0)
    xy = torch.rand(50, 2, generator=g) * torch.tensor([w * 0.8, h * 0.8])
    boxes = torch.cat((xy, xy + torch.rand(50, 2, generator=g) * torch.tensor([w * 0.2, h * 0.2])), 1)
    back = ctx.unmap_boxes(ctx.map_boxes(boxes))
    assert torch.allclose(back, boxes, atol=1e-3)


def test_shrink_only_without_scaleup():
    assert LetterboxContext.from_shapes(320, 240, 640).ratio == 1.0
    ctx = LetterboxContext.from_shapes(320, 240, 640, scaleup=True)
    assert ctx.ratio == 2.0 and ctx.pad_y == 80.0


def test_clamping_is_monotone():
    """Boxes pushed further past the border never unmap to larger coordinates than the border."""
    ctx = LetterboxContext.from_shapes(640, 480, 640)
    xs = torch.linspace(500, 900, 9)
    boxes = torch.stack((xs - 50, torch.full_like(xs, 100), xs, torch.full_like(xs, 600)), 1)
    out = ctx.unmap_boxes(boxes)
    assert torch.all(out[1:, 2] >= out[:-1, 2])
    assert out[:, 2].max() == 640 and out[:, 3].max() == 480
    assert out.min() >= 0


def test_numpy_boxes():
    ctx = LetterboxContext.from_shapes(640, 480, 640)
    out = ctx.unmap_boxes(np.array([[100.0, 160.0, 300.0, 320.0]]))
    assert isinstance(out, np.ndarray)
    assert out.tolist() == [[100.0, 80.0, 300.0, 240.0]]


def test_invalid_context():
    with pytest.raises(ConfigError):
        LetterboxContext(640, 480, 0.0, 0.0, 0.0, 640)
    with pytest.raises(ConfigError):
        LetterboxContext(0, 480, 1.0, 0.0, 0.0, 640)
