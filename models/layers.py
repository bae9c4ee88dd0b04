"""
models/layers.py

Optional reference producer of raw head outputs. It sits outside the numeric
core: decode, assignment, loss and post-processing only consume the per-level
[B, 4*reg_max + nc + extra, H, W] tensors, whatever module produced them.
DetectBranches is one such producer, kept to build realistic inputs and to
show the bias priors the decode expects.
"""
import math
import torch
import torch.nn as nn
from utils.helpers import autopad


class Conv(nn.Module):
    default_act = nn.SiLU()

    def __init__(self, c1, c2, k=1, s=1, p=None, g=1, d=1, act=True):
        super().__init__()
        self.conv = nn.Conv2d(c1, c2, k, s, autopad(k, p, d), groups=g, dilation=d, bias=False)
        self.bn = nn.BatchNorm2d(c2)
        self.act = self.default_act if act is True else act if isinstance(act, nn.Module
                                                                         ) else nn.Identity()

    def forward(self, x):
        return self.act(self.bn(self.conv(x)))


def channel_budget(ch, nc, reg_max, extra=0):
    """
    Hidden widths of the head branches, all derived from the smallest level ch[0]
    and shared across levels.

    Returns (c2, c3, c4): box branch, class branch and extra-task branch widths.
    """
    ch0 = int(ch[0])
    c2 = max(16, ch0 // 4, reg_max * 4)
    c3 = max(ch0, min(nc, 100))
    c4 = max(ch0 // 4, extra) if extra else 0
    return c2, c3, c4


def bias_prior(nc, stride, img_size=640):
    """Initial class-logit bias: roughly 5 objects per image spread over nc classes."""
    return math.log(5 / nc / (img_size / float(stride))**2)


class DetectBranches(nn.Module):
    """
    Decoupled per-level conv branches producing raw head outputs.

    Output per level: [B, 4*reg_max + nc + extra, H, W], box distribution first,
    then class logits, then task channels (mask coefficients, keypoints or angle).
    Decoding is not done here; see models.heads.DecodeHead.
    """
    def __init__(self, nc: int = 80, ch: tuple = (), reg_max: int = 16, extra: int = 0):
        super().__init__()
        self.nc = nc
        self.nl = len(ch)
        self.reg_max = reg_max
        self.extra = extra
        self.no = nc + 4 * reg_max + extra
        c2, c3, c4 = channel_budget(ch, nc, reg_max, extra)
        self.cv2 = nn.ModuleList(
            nn.Sequential(Conv(x, c2, 3), Conv(c2, c2, 3), nn.Conv2d(c2, 4 * reg_max, 1)) for x in ch
        )
        self.cv3 = nn.ModuleList(
            nn.Sequential(Conv(x, c3, 3), Conv(c3, c3, 3), nn.Conv2d(c3, nc, 1)) for x in ch
        )
        self.cv4 = nn.ModuleList(
            nn.Sequential(Conv(x, c4, 3), Conv(c4, c4, 3), nn.Conv2d(c4, extra, 1)) for x in ch
        ) if extra else None

    def initialize_biases(self, strides, img_size=640):
        """Box bias 1.0, class bias from bias_prior for each level's stride."""
        assert len(strides) == self.nl, f"expected {self.nl} strides, got {len(strides)}"
        with torch.no_grad():
            for a, b, s in zip(self.cv2, self.cv3, strides):
                a[-1].bias.fill_(1.0)
                b[-1].bias.fill_(bias_prior(self.nc, s, img_size))

    def forward(self, feats):
        assert len(feats) == self.nl, f"DetectBranches expected {self.nl} feature maps, got {len(feats)}"
        outputs = []
        for i in range(self.nl):
            parts = [self.cv2[i](feats[i]), self.cv3[i](feats[i])]
            if self.cv4 is not None:
                parts.append(self.cv4[i](feats[i]))
            outputs.append(torch.cat(parts, 1))
        return outputs
