"""
core/runtime.py

Detection runtime: owns the pyramid configuration and the anchor-table cache,
and wires decode, assignment, loss and post-processing into two entry points.

    forward_infer(raw_per_level, sizes, letterbox) -> List[Detections]
    forward_train(raw_per_level, sizes, gt, gains) -> TrainOutput
"""
import threading
from typing import Dict, Optional

import torch

from core.config import YOLOConfig, get_config
from models.heads import TaskHead
from utils.errors import DeviceMismatchError
from utils.geometry import AnchorTable, make_anchors, normalize_sizes
from utils.logging import get_logger, set_log_level
from utils.loss import DetectionLoss, LOSS_NAMES
from utils.postprocess import Postprocessor
from utils.structures import DecodedPrediction, GroundTruthBatch, TrainOutput


class AnchorCache:
    """
    Lazily built AnchorTable keyed by (sizes, device, dtype).

    Readers take the current table without locking; a rebuild happens under a
    lock and replaces the table in a single assignment.
    """
    def __init__(self, strides, offset=0.5, allow_rebuild=True):
        self.strides = tuple(strides)
        self.offset = float(offset)
        self.allow_rebuild = bool(allow_rebuild)
        self._table: Optional[AnchorTable] = None
        self._lock = threading.Lock()
        self.builds = 0

    @property
    def table(self) -> Optional[AnchorTable]:
        return self._table

    def get(self, sizes, device, dtype=torch.float32) -> AnchorTable:
        key = (normalize_sizes(sizes), torch.device(device), dtype)
        table = self._table
        if table is not None and self._matches(table, key):
            return table
        with self._lock:
            table = self._table
            if table is not None and self._matches(table, key):
                return table
            if table is not None and not self.allow_rebuild and table.sizes == key[0]:
                raise DeviceMismatchError(
                    f"anchor table cached on {table.device}/{table.dtype}, "
                    f"requested {key[1]}/{key[2]} and rebuilds are disabled"
                )
            table = make_anchors(key[0], self.strides, self.offset, device=key[1], dtype=dtype)
            self._table = table
            self.builds += 1
        get_logger().debug(
            "runtime/anchors_rebuilt",
            {"sizes": [list(s) for s in key[0]], "device": str(key[1]), "dtype": str(dtype),
             "anchors": table.num_anchors}
        )
        return table

    @staticmethod
    def _matches(table: AnchorTable, key):
        sizes, device, dtype = key
        return table.sizes == sizes and _same_device(table.device, device) and table.dtype == dtype

    def clear(self):
        with self._lock:
            self._table = None


def _same_device(a: torch.device, b: torch.device):
    if a.type != b.type:
        return False
    # "cuda" and "cuda:0" name the same device when the index is left implicit
    return a.index is None or b.index is None or a.index == b.index


class DetectRuntime:
    """
    Orchestrates the numeric core for one model configuration.

    Args:
        cfg: YOLOConfig, a {'hyp': ...} mapping or None for defaults
        hyp: hyperparameter overrides (highest priority)
        device: device used when a call does not imply one from its inputs
    """
    def __init__(self, cfg=None, hyp: Optional[Dict] = None, device="cpu"):
        self.config: YOLOConfig = get_config(cfg, hyp=hyp)
        set_log_level(self.config.get("log_level", "INFO"))
        self.device = torch.device(device)
        self.head = TaskHead.from_config(self.config).to(self.device)
        self.loss_fn = DetectionLoss.from_config(self.config).to(self.device)
        self.postprocessor = Postprocessor(self.config)
        self.anchors = AnchorCache(
            self.head.strides,
            offset=self.config.pyramid["grid_offset"],
            allow_rebuild=self.config.get("allow_anchor_rebuild", True),
        )

    @property
    def nc(self):
        return self.head.layout.nc

    @property
    def reg_max(self):
        return self.head.layout.reg_max

    @property
    def strides(self):
        return self.head.strides

    def _input_device_dtype(self, raw_per_level):
        first = raw_per_level[0] if len(raw_per_level) else None
        if first is not None and not isinstance(first, torch.Tensor):
            first = first[0]
        if first is None:
            return self.device, torch.float32
        dtype = first.dtype if first.is_floating_point() else torch.float32
        return first.device, dtype

    def decode(self, raw_per_level, sizes=None) -> DecodedPrediction:
        """Decode with cached anchors; sizes default to the tensors' own spatial sizes."""
        device, dtype = self._input_device_dtype(raw_per_level)
        if sizes is None:
            sizes = [f if isinstance(f, torch.Tensor) else f[0] for f in raw_per_level]
        anchors = self.anchors.get(sizes, device, dtype)
        return self.head(raw_per_level, sizes=sizes, anchors=anchors)

    @torch.no_grad()
    def forward_infer(self, raw_per_level, sizes=None, letterbox=None):
        """
        Raw head outputs -> per-image detections in original-image pixels.

        letterbox: LetterboxContext for the batch, a list with one per image, or None.
        """
        decoded = self.decode(raw_per_level, sizes)
        return self.postprocessor(decoded, letterbox=letterbox)

    def forward_train(self, raw_per_level, sizes=None, gt: GroundTruthBatch = None,
                      gains: Optional[Dict[str, float]] = None, step: Optional[int] = None) -> TrainOutput:
        """Raw head outputs + padded ground truth -> loss, its components and the assignment."""
        decoded = self.decode(raw_per_level, sizes)
        if gt is None:
            gt = GroundTruthBatch.empty(decoded.batch_size, device=decoded.boxes.device)
        assignment = self.loss_fn.assign(decoded, gt)
        loss, components = self.loss_fn(decoded, gt, gains=gains, assignment=assignment)
        items = {k: float(v) for k, v in zip(LOSS_NAMES, components.tolist())}
        get_logger().log_losses(items, step=step)
        return TrainOutput(loss=loss, items=items, assignment=assignment, components=components)
