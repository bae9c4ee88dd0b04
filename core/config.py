"""
core/config.py

Centralized configuration for the detection core so decode, assignment, loss and
post-processing agree on the same constants.
"""
from typing import Dict, Any, Optional
from pathlib import Path
from utils.errors import ConfigError
from utils.geometry import validate_strides
from utils.helpers import load_yaml
from utils.logging import CONSOLE_LEVELS
import copy

NMS_BACKENDS = ("greedy", "torchvision")
HEAD_KINDS = ("detect", "segment", "pose", "obb")


def _deep_update(dst: dict, src: dict) -> dict:
    """Recursively update mapping dst with src (in-place) and return dst."""
    for k, v in (src or {}).items():
        if isinstance(v, dict) and isinstance(dst.get(k), dict):
            _deep_update(dst[k], v)
        else:
            dst[k] = v
    return dst


class YOLOConfig:
    """Central configuration management for the YOLO detection core."""

    DEFAULTS = {
        # === Pyramid & Head ===
        "reg_max": 16,  # DFL bins per side (1 disables DFL)
        "nc": 80,  # Number of classes
        "strides": [8, 16, 32],  # FPN strides [P3, P4, P5]
        "grid_offset": 0.5,  # Anchor offset inside a cell (0.5 = centre)
        "head": {  # Task head variant and its pass-through channels
            "kind": "detect",  # detect | segment | pose | obb
            "nm": 32,  # Mask coefficients (segment)
            "kpt_shape": [17, 3],  # Keypoints x dims (pose)
            "ne": 1,  # Extra angle channels (obb)
        },

        # === Loss ===
        "box": 7.5,  # Box loss gain
        "cls": 0.5,  # Class loss gain
        "dfl": 1.5,  # DFL loss gain
        "iou_type": "CIoU",  # Box loss IoU variant: IoU/GIoU/DIoU/CIoU

        # === Task-aligned assignment ===
        "assign_topk": 13,  # Candidates kept per GT
        "assign_alpha": 0.5,  # Exponent on class score
        "assign_beta": 6.0,  # Exponent on IoU
        "assign_eps": 1e-9,  # Containment margin and normaliser epsilon

        # === Postprocess/NMS ===
        "conf_thresh": 0.25,  # Strict confidence gate
        "iou_thresh": 0.45,  # NMS suppression threshold
        "max_det": 300,  # Detections kept per image after NMS
        "max_nms": 30000,  # Candidates kept per image before NMS
        "max_wh": 7680,  # Class offset coordinate for batched NMS
        "class_agnostic_nms": False,  # Class-agnostic NMS toggle
        "nms_backend": "greedy",  # greedy (deterministic) | torchvision
        "nms_free": False,  # Skip NMS for end-to-end heads

        # === Runtime ===
        "allow_anchor_rebuild": True,  # False: device/dtype change raises DeviceMismatchError
        "log_level": "INFO",  # Console threshold for the core logger
    }

    def __init__(self, hyp: Optional[Dict[str, Any]] = None, hyp_path: Optional[Path] = None):
        """
        Initialize configuration with optional hyperparameters.

        Args:
            hyp: Dictionary of hyperparameters (highest priority)
            hyp_path: Path to YAML file with hyperparameters
        """
        self.hyp = copy.deepcopy(self.DEFAULTS)

        if hyp_path is not None:
            _deep_update(self.hyp, load_yaml(Path(hyp_path)))

        if hyp is not None:
            _deep_update(self.hyp, hyp)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a hyperparameter value."""
        return self.hyp.get(key, default)

    def __getitem__(self, key: str) -> Any:
        return self.hyp[key]

    def update(self, updates: Dict[str, Any]):
        """Update hyperparameters with deep-merge semantics for nested dicts."""
        _deep_update(self.hyp, updates)

    def validate(self) -> "YOLOConfig":
        """Raise ConfigError for values no component can run with. Returns self."""
        h = self.hyp
        validate_strides(h["strides"])
        if int(h["reg_max"]) < 1:
            raise ConfigError(f"reg_max must be >= 1, got {h['reg_max']}")
        if int(h["nc"]) < 1:
            raise ConfigError(f"nc must be >= 1, got {h['nc']}")
        if int(h["assign_topk"]) < 1:
            raise ConfigError(f"assign_topk must be >= 1, got {h['assign_topk']}")
        for k in ("conf_thresh", "iou_thresh", "box", "cls", "dfl", "assign_alpha", "assign_beta"):
            if float(h[k]) < 0:
                raise ConfigError(f"{k} must be non-negative, got {h[k]}")
        for k in ("max_det", "max_nms", "max_wh"):
            if int(h[k]) < 1:
                raise ConfigError(f"{k} must be >= 1, got {h[k]}")
        if h["nms_backend"] not in NMS_BACKENDS:
            raise ConfigError(f"nms_backend must be one of {NMS_BACKENDS}, got {h['nms_backend']!r}")
        if h["head"]["kind"] not in HEAD_KINDS:
            raise ConfigError(f"head.kind must be one of {HEAD_KINDS}, got {h['head']['kind']!r}")
        if str(h["iou_type"]).upper() not in ("IOU", "GIOU", "DIOU", "CIOU"):
            raise ConfigError(f"Unsupported iou_type {h['iou_type']!r}")
        levels = [t.strip().upper() for t in str(h["log_level"]).split(",") if t.strip()]
        if not levels or any(t not in CONSOLE_LEVELS + ("BASIC", ) for t in levels):
            raise ConfigError(f"log_level must name one of {CONSOLE_LEVELS}, got {h['log_level']!r}")
        return self

    @property
    def strides(self):
        return tuple(float(s) for s in self.hyp["strides"])

    @property
    def pyramid(self) -> Dict[str, Any]:
        """Get the settings decode and anchors must agree on."""
        return {
            "nc": int(self.hyp["nc"]),
            "reg_max": int(self.hyp["reg_max"]),
            "strides": self.strides,
            "grid_offset": float(self.hyp["grid_offset"]),
        }

    @property
    def loss_weights(self) -> Dict[str, float]:
        """Get loss gains."""
        return {k: float(self.hyp.get(k, self.DEFAULTS[k])) for k in ("box", "cls", "dfl")}

    @property
    def assigner_config(self) -> Dict[str, Any]:
        """Get task-aligned assigner configuration."""
        return {
            "topk": int(self.hyp["assign_topk"]),
            "alpha": float(self.hyp["assign_alpha"]),
            "beta": float(self.hyp["assign_beta"]),
            "eps": float(self.hyp["assign_eps"]),
        }

    @property
    def postprocess_config(self) -> Dict[str, Any]:
        """Get postprocessing configuration."""
        keys = ("conf_thresh", "iou_thresh", "max_det", "max_nms", "max_wh",
                "class_agnostic_nms", "nms_backend", "nms_free")
        return {k: self.hyp.get(k, self.DEFAULTS[k]) for k in keys}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return copy.deepcopy(self.hyp)


def get_config(
    cfg: Optional[Dict[str, Any]] = None,
    hyp: Optional[Dict[str, Any]] = None,
    hyp_path: Optional[Path] = None
) -> YOLOConfig:
    """
    Create a validated YOLOConfig instance from various sources.

    Priority order:
    1. hyp dict (highest)
    2. hyp_path file
    3. cfg['hyp'] if exists
    4. DEFAULTS (base)
    """
    if isinstance(cfg, YOLOConfig):
        config = YOLOConfig(cfg.to_dict())
    else:
        config = YOLOConfig()
        if cfg and 'hyp' in cfg:
            if isinstance(cfg['hyp'], dict):
                config.update(cfg['hyp'])
            elif isinstance(cfg['hyp'], (str, Path)):
                config.update(load_yaml(Path(cfg['hyp'])))

    if hyp_path:
        config.update(load_yaml(Path(hyp_path)))

    if hyp:
        config.update(hyp)

    return config.validate()
