from concurrent.futures import ThreadPoolExecutor

import pytest
import torch
from tests.config import DEVICE, NUM_CLASSES, REG_MAX, STRIDES
from core.runtime import AnchorCache, DetectRuntime
from utils.errors import DeviceMismatchError, ShapeMismatchError
from utils.letterbox import LetterboxContext
from utils.logging import LogLevel, get_logger, set_log_level
from utils.structures import GroundTruthBatch


def _runtime(**hyp):
    base = {"nc": NUM_CLASSES, "reg_max": REG_MAX, "strides": list(STRIDES)}
    base.update(hyp)
    return DetectRuntime(hyp=base, device=DEVICE)


def test_anchor_cache_reused_across_calls(raw_levels_factory):
    rt = _runtime()
    rt.forward_infer(raw_levels_factory(batch=1))
    table = rt.anchors.table
    rt.forward_infer(raw_levels_factory(batch=2, seed=1))
    assert rt.anchors.builds == 1
    assert rt.anchors.table is table


def test_anchor_cache_rebuilds_on_new_sizes(raw_levels_factory):
    rt = _runtime()
    rt.forward_infer(raw_levels_factory(batch=1))
    rt.forward_infer(raw_levels_factory(batch=1, sizes=[(4, 6), (2, 3), (1, 2)]))
    assert rt.anchors.builds == 2
    assert rt.anchors.table.num_anchors == 24 + 6 + 2


def test_dtype_change_rebuilds_when_allowed():
    cache = AnchorCache(STRIDES)
    a = cache.get([(2, 2), (1, 1), (1, 1)], "cpu", torch.float32)
    b = cache.get([(2, 2), (1, 1), (1, 1)], "cpu", torch.float64)
    assert cache.builds == 2
    assert a.dtype == torch.float32 and b.dtype == torch.float64


def test_dtype_change_raises_when_rebuild_disabled():
    cache = AnchorCache(STRIDES, allow_rebuild=False)
    cache.get([(2, 2), (1, 1), (1, 1)], "cpu", torch.float32)
    with pytest.raises(DeviceMismatchError):
        cache.get([(2, 2), (1, 1), (1, 1)], "cpu", torch.float64)
    cache.get([(4, 4), (2, 2), (1, 1)], "cpu", torch.float32)
    assert cache.builds == 2, "a size change still rebuilds"


def test_runtime_honours_rebuild_setting(raw_levels_factory):
    rt = _runtime(allow_anchor_rebuild=False)
    rt.forward_infer(raw_levels_factory(batch=1, device="cpu"))
    with pytest.raises(DeviceMismatchError):
        rt.forward_infer([r.double() for r in raw_levels_factory(batch=1, device="cpu")])


def test_concurrent_readers_build_once():
    cache = AnchorCache(STRIDES)
    sizes = [(8, 8), (4, 4), (2, 2)]
    with ThreadPoolExecutor(max_workers=8) as pool:
        tables = list(pool.map(lambda _: cache.get(sizes, "cpu"), range(32)))
    assert cache.builds == 1
    assert all(t is tables[0] for t in tables)


def test_forward_infer_outputs(raw_levels_factory):
    rt = _runtime(conf_thresh=0.3, max_det=20)
    dets = rt.forward_infer(raw_levels_factory(batch=2, seed=7))
    assert len(dets) == 2
    for det in dets:
        assert len(det) <= 20
        assert det.boxes.shape == (len(det), 4)
        assert torch.all(det.scores > 0.3)
        assert torch.all(det.scores[:-1] >= det.scores[1:])
        assert torch.all((det.classes >= 0) & (det.classes < NUM_CLASSES))


def test_forward_infer_with_letterbox(raw_levels_factory):
    rt = _runtime(conf_thresh=0.0)
    ctx = LetterboxContext.from_shapes(32, 24, 64, scaleup=True)
    det = rt.forward_infer(raw_levels_factory(batch=1), letterbox=ctx)[0]
    assert len(det) > 0
    assert det.boxes[:, [0, 2]].max() <= 32 and det.boxes[:, [1, 3]].max() <= 24
    assert det.boxes.min() >= 0


def test_forward_infer_zero_size_levels():
    rt = _runtime()
    raw = [torch.zeros(1, 4 * REG_MAX + NUM_CLASSES, 0, 0, device=DEVICE) for _ in STRIDES]
    dets = rt.forward_infer(raw)
    assert len(dets) == 1 and len(dets[0]) == 0


def test_forward_train(raw_levels_factory):
    rt = _runtime()
    raw = raw_levels_factory(batch=2, requires_grad=True, seed=9)
    gt = GroundTruthBatch.from_lists(
        [torch.tensor([1]), torch.zeros(0)], [torch.tensor([[8.0, 8.0, 40.0, 40.0]]), torch.zeros(0, 4)],
        device=DEVICE,
    )
    out = rt.forward_train(raw, gt=gt, step=3)
    assert set(out.items) == {"box", "cls", "dfl"}
    assert torch.isfinite(out.loss)
    assert out.assignment.fg_mask.shape == (2, rt.anchors.table.num_anchors)
    assert not out.assignment.fg_mask[1].any()
    assert out.components.shape == (3, )
    out.loss.backward()
    assert all(r.grad is not None for r in raw)


def test_forward_train_without_gt(runtime, raw_levels_factory):
    out = runtime.forward_train(raw_levels_factory(batch=1))
    assert out.items["box"] == 0 and out.items["dfl"] == 0
    assert out.assignment.num_foreground == 0


def test_task_head_extra_channels_reach_detections(raw_levels_factory):
    rt = _runtime(head={"kind": "obb", "ne": 1}, conf_thresh=0.0, max_det=5)
    assert rt.head.layout.extra == 1
    dets = rt.forward_infer(raw_levels_factory(batch=1, extra=1))
    assert 0 < len(dets[0]) <= 5
    assert dets[0].extra.shape == (len(dets[0]), 1)


def test_shape_errors_propagate(runtime, raw_levels_factory):
    with pytest.raises(ShapeMismatchError):
        runtime.forward_infer(raw_levels_factory(batch=1, nc=NUM_CLASSES + 2))


def test_log_level_reaches_process_logger():
    try:
        _runtime(log_level="WARNING")
        log = get_logger()
        assert log.console_min_level == LogLevel.WARNING
        assert not log.is_enabled(LogLevel.INFO)
        assert log.is_enabled(LogLevel.ERROR)
    finally:
        set_log_level("DEBUG")
