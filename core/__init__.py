"""Core configuration and runtime for the YOLO detection core."""
from .config import YOLOConfig, get_config
from .runtime import AnchorCache, DetectRuntime

__all__ = ['YOLOConfig', 'get_config', 'AnchorCache', 'DetectRuntime']
