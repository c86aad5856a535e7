"""
Weighted trajectory losses.

A loss is built from a (horizon, transition_dim) weight tensor and scores a
predicted trajectory against its target elementwise. The first action of the
trajectory carries its own weight, and its unweighted error is reported as
the ``a0_loss`` diagnostic.

Value losses regress a scalar return per trajectory and report prediction
and target statistics, including their correlation.
"""

import dataclasses
from enum import Enum
from typing import Dict, Optional

import torch
import torch.nn as nn

from ..errors import ConfigError


@dataclasses.dataclass
class LossResult:
    """Scalar training loss plus detached diagnostics."""
    loss: torch.Tensor
    info: Dict[str, torch.Tensor] = dataclasses.field(default_factory=dict)


class WeightedLoss(nn.Module):
    """Base class: mean of ``compute(pred, targ) * weights``.

    Args:
        weights: Tensor of shape (horizon, transition_dim)
        action_dim: Number of leading action channels
    """

    def __init__(self, weights: torch.Tensor, action_dim: int):
        super().__init__()
        # Rebuilt from config on load, so kept out of the state dict
        self.register_buffer("weights", weights, persistent=False)
        self.action_dim = action_dim

    def compute(self, pred: torch.Tensor, targ: torch.Tensor) -> torch.Tensor:
        """Elementwise loss, same shape as ``pred``."""
        raise NotImplementedError

    def forward(self, pred: torch.Tensor, targ: torch.Tensor) -> LossResult:
        """
        Args:
            pred, targ: Tensors of shape (batch_size, horizon, transition_dim)

        Returns:
            LossResult with the weighted mean loss and ``a0_loss`` in info
        """
        loss = self.compute(pred, targ)
        weighted_loss = (loss * self.weights).mean()

        a0_weights = self.weights[0, :self.action_dim]
        a0 = loss[:, 0, :self.action_dim]
        # Zero-weighted action dims report their raw error
        a0 = torch.where(a0_weights > 0, a0 / torch.where(a0_weights > 0, a0_weights, 1.), a0)
        return LossResult(weighted_loss, {"a0_loss": a0.mean().detach()})


class WeightedL1(WeightedLoss):

    def compute(self, pred, targ):
        return torch.abs(pred - targ)


class WeightedL2(WeightedLoss):

    def compute(self, pred, targ):
        return (pred - targ) ** 2


class ValueLoss(nn.Module):
    """Base class for scalar value regression: mean of ``compute(pred, targ)``.

    Reports prediction/target statistics and their Pearson correlation in info.
    """

    CORR_EPS = 1e-8

    def compute(self, pred: torch.Tensor, targ: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def forward(self, pred: torch.Tensor, targ: torch.Tensor) -> LossResult:
        """
        Args:
            pred, targ: Tensors of shape (batch_size, 1)
        """
        loss = self.compute(pred, targ).mean()

        pred, targ = pred.detach(), targ.detach()
        info = {
            "mean_pred": pred.mean(), "mean_targ": targ.mean(),
            "min_pred": pred.min(), "min_targ": targ.min(),
            "max_pred": pred.max(), "max_targ": targ.max(),
        }
        if pred.numel() > 1:
            info["corr"] = pearson_corr(pred.flatten(), targ.flatten(), self.CORR_EPS)
        else:
            info["corr"] = torch.tensor(float("nan"), device=pred.device)
        return LossResult(loss, info)


def pearson_corr(x: torch.Tensor, y: torch.Tensor, eps: float = 1e-8) -> torch.Tensor:
    """Pearson correlation of two 1D tensors, NaN when either is (near) constant."""
    x = x - x.mean()
    y = y - y.mean()
    denom = x.pow(2).sum().sqrt() * y.pow(2).sum().sqrt()
    if denom.item() < eps:
        return torch.tensor(float("nan"), device=x.device)
    return (x * y).sum() / denom


class ValueL1(ValueLoss):

    def compute(self, pred, targ):
        return torch.abs(pred - targ)


class ValueL2(ValueLoss):

    def compute(self, pred, targ):
        return (pred - targ) ** 2


class LossType(Enum):
    """Closed set of supported losses."""
    L1 = "l1"
    L2 = "l2"
    VALUE_L1 = "value_l1"
    VALUE_L2 = "value_l2"

    @property
    def is_value(self) -> bool:
        return self in (LossType.VALUE_L1, LossType.VALUE_L2)

    @classmethod
    def parse(cls, value) -> "LossType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as e:
            raise ConfigError(
                f"Unknown loss type {value!r}, expected one of {[m.value for m in cls]}"
            ) from e

    def build(self, weights: Optional[torch.Tensor] = None, action_dim: Optional[int] = None) -> nn.Module:
        """Instantiate the loss; weighted losses need ``weights`` and ``action_dim``."""
        if self.is_value:
            return {LossType.VALUE_L1: ValueL1, LossType.VALUE_L2: ValueL2}[self]()
        if weights is None or action_dim is None:
            raise ConfigError(f"Loss {self.value!r} needs weights and action_dim")
        loss_cls = {LossType.L1: WeightedL1, LossType.L2: WeightedL2}[self]
        return loss_cls(weights, action_dim)


def get_loss_weights(
    horizon: int,
    transition_dim: int,
    action_dim: int,
    action_weight: float = 1.0,
    discount: float = 1.0,
    weights_dict: Optional[Dict[int, float]] = None,
) -> torch.Tensor:
    """Build the (horizon, transition_dim) loss weight tensor.

    Args:
        horizon: Trajectory length
        transition_dim: action_dim + observation_dim
        action_dim: Number of leading action channels
        action_weight: Weight assigned directly to the first action
        discount: Per-timestep discount, normalized to mean 1 over the horizon
        weights_dict: {observation_index: multiplier}

    Returns:
        Weight tensor of shape (horizon, transition_dim)
    """
    dim_weights = torch.ones(transition_dim, dtype=torch.float32)

    # Observation multipliers are indexed after the action channels
    for ind, w in (weights_dict or {}).items():
        if not 0 <= ind < transition_dim - action_dim:
            raise ConfigError(f"Loss weight index {ind} outside observation_dim={transition_dim - action_dim}")
        dim_weights[action_dim + ind] *= w

    discounts = discount ** torch.arange(horizon, dtype=torch.float)
    discounts = discounts / discounts.mean()
    loss_weights = torch.einsum('h,t->ht', discounts, dim_weights)

    loss_weights[0, :action_dim] = action_weight
    return loss_weights
