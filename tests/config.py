"""
Central configuration for the test suite.
"""
import torch

DEVICE = torch.device('cuda' if torch.cuda.is_available() else 'cpu')

NUM_CLASSES = 4
REG_MAX = 16
STRIDES = (8, 16, 32)

IMG_SIZE = 64

TEST_LOG_DIR = 'runs/tests'
