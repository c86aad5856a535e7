"""Common components for trajectory diffusion."""

from .losses import (
    LossResult,
    LossType,
    WeightedLoss,
    WeightedL1,
    WeightedL2,
    ValueLoss,
    ValueL1,
    ValueL2,
    get_loss_weights,
    pearson_corr
)
from .networks import (
    SinusoidalPosEmb,
    Downsample1d,
    Upsample1d,
    Conv1dBlock,
    ResidualTemporalBlock,
    TemporalUnet,
    TemporalValue
)
from .normalizer import DatasetNormalizer, Normalizer, NormalizerType
from .utils import (
    set_seed,
    get_device,
    cosine_beta_schedule,
    DiffusionSchedule,
    make_schedule,
    extract,
    apply_conditioning
)

__all__ = [
    "LossResult",
    "LossType",
    "WeightedLoss",
    "WeightedL1",
    "WeightedL2",
    "ValueLoss",
    "ValueL1",
    "ValueL2",
    "get_loss_weights",
    "pearson_corr",
    "SinusoidalPosEmb",
    "Downsample1d",
    "Upsample1d",
    "Conv1dBlock",
    "ResidualTemporalBlock",
    "TemporalUnet",
    "TemporalValue",
    "DatasetNormalizer",
    "Normalizer",
    "NormalizerType",
    "set_seed",
    "get_device",
    "cosine_beta_schedule",
    "DiffusionSchedule",
    "make_schedule",
    "extract",
    "apply_conditioning"
]
