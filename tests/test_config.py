import pytest
from core.config import YOLOConfig, get_config
from utils.errors import ConfigError
from utils.helpers import save_yaml


def test_defaults_validate():
    cfg = get_config()
    assert cfg.strides == (8.0, 16.0, 32.0)
    assert cfg.loss_weights == {"box": 7.5, "cls": 0.5, "dfl": 1.5}
    assert cfg.assigner_config == {"topk": 13, "alpha": 0.5, "beta": 6.0, "eps": 1e-9}
    assert cfg.postprocess_config["conf_thresh"] == 0.25
    assert cfg.postprocess_config["iou_thresh"] == 0.45


def test_defaults_are_not_shared():
    a = YOLOConfig({"head": {"kind": "pose"}})
    b = YOLOConfig()
    assert b["head"]["kind"] == "detect"
    assert a["head"]["nm"] == 32, "nested keys are deep-merged"


def test_priority_hyp_over_file_over_cfg(tmp_path):
    path = tmp_path / "hyp.yaml"
    save_yaml(path, {"box": 5.0, "cls": 1.0})
    cfg = get_config({"hyp": {"box": 1.0, "cls": 2.0, "dfl": 3.0}}, hyp={"box": 9.0}, hyp_path=path)
    assert cfg.loss_weights == {"box": 9.0, "cls": 1.0, "dfl": 3.0}


def test_cfg_hyp_may_be_a_yaml_path(tmp_path):
    path = tmp_path / "hyp.yaml"
    save_yaml(path, {"nc": 3, "strides": [4, 8]})
    cfg = get_config({"hyp": str(path)})
    assert cfg["nc"] == 3 and cfg.strides == (4.0, 8.0)


def test_copy_of_existing_config():
    base = get_config(hyp={"nc": 7})
    copy = get_config(base, hyp={"reg_max": 8})
    assert copy["nc"] == 7 and copy["reg_max"] == 8
    assert base["reg_max"] == 16


@pytest.mark.parametrize("bad", [
    {"strides": [16, 8]},
    {"strides": []},
    {"reg_max": 0},
    {"nc": 0},
    {"assign_topk": 0},
    {"iou_thresh": -0.1},
    {"max_det": 0},
    {"nms_backend": "fast"},
    {"head": {"kind": "keypoints"}},
    {"iou_type": "SIoU"},
    {"log_level": "LOUD"},
    {"log_level": ""},
])
def test_invalid_values_raise(bad):
    with pytest.raises(ConfigError):
        get_config(hyp=bad)


def test_to_dict_is_a_copy():
    cfg = YOLOConfig()
    d = cfg.to_dict()
    d["strides"].append(64)
    assert cfg.strides == (8.0, 16.0, 32.0)


def test_pyramid_view():
    cfg = get_config(hyp={"nc": 3, "reg_max": 8, "strides": [8, 16]})
    assert cfg.pyramid == {"nc": 3, "reg_max": 8, "strides": (8.0, 16.0), "grid_offset": 0.5}
