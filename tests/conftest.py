"""
Pytest configuration and shared fixtures.

- Route the process-wide logger to TEST_LOG_DIR without tensorboard or console noise
- Provide common fixtures: runtime, raw_levels_factory, level_sizes
"""
import torch
import pytest
from tests.config import DEVICE, NUM_CLASSES, IMG_SIZE, REG_MAX, STRIDES, TEST_LOG_DIR
from core.runtime import DetectRuntime
from utils.logging import get_logger, reset_logger


def pytest_sessionstart(session):
    reset_logger()
    get_logger(TEST_LOG_DIR, tensorboard=False, console=False, level="DEBUG")


def pytest_sessionfinish(session, exitstatus):
    reset_logger()


@pytest.fixture(scope="module")
def level_sizes():
    return tuple((IMG_SIZE // s, IMG_SIZE // s) for s in STRIDES)


@pytest.fixture(scope="module")
def raw_levels_factory(level_sizes):
    """Factory for per-level fused head outputs [B, 4*reg_max + nc + extra, H, W]."""
    def _create(batch=2, nc=NUM_CLASSES, reg_max=REG_MAX, extra=0, sizes=None, device=DEVICE,
                seed=0, requires_grad=False):
        g = torch.Generator().manual_seed(seed)
        out = []
        for h, w in (sizes or level_sizes):
            t = torch.randn(batch, 4 * reg_max + nc + extra, h, w, generator=g).to(device)
            out.append(t.requires_grad_(requires_grad))
        return out

    return _create


@pytest.fixture(scope="module")
def runtime():
    return DetectRuntime(
        hyp={"nc": NUM_CLASSES, "reg_max": REG_MAX, "strides": list(STRIDES)}, device=DEVICE
    )
