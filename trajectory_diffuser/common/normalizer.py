"""
Data Normalizers for Trajectory Diffusion.

Per-field normalizers for actions and observations:
- Fit normalizers to dataset statistics
- Normalize inputs to [-1, 1] range (limits modes) or zero mean, unit std (gaussian mode)
- Unnormalize outputs for environment interaction
- Save/load normalizer state through state_dict
"""

from enum import Enum
from typing import Dict, Union

import numpy as np
import torch
import torch.nn as nn

from ..errors import ConfigError

ArrayLike = Union[torch.Tensor, np.ndarray]


class NormalizerType(Enum):
    LIMITS = "limits"
    GAUSSIAN = "gaussian"
    SAFE_LIMITS = "safe_limits"

    @classmethod
    def parse(cls, value) -> "NormalizerType":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError as e:
            raise ConfigError(
                f"Unknown normalizer type {value!r}, expected one of {[m.value for m in cls]}"
            ) from e


class Normalizer(nn.Module):
    """Normalizer for a single field (action or observation).

    Supports three modes:
    - 'limits': Scale [min, max] to [-1, 1]; constant dimensions map to 0
    - 'safe_limits': As 'limits', with constant dimensions widened by ``eps``
    - 'gaussian': Zero mean, unit std normalization

    Args:
        mode: NormalizerType or its string value
        eps: Widening applied to constant dimensions in 'safe_limits' mode
    """

    CONSTANT_EPS = 1e-8
    UNNORMALIZE_TOL = 1e-4

    def __init__(self, mode: Union[str, NormalizerType] = NormalizerType.LIMITS, eps: float = 1.0):
        super().__init__()
        self.mode = NormalizerType.parse(mode)
        self.eps = eps
        self.fitted = False

        # Parameters will be registered after fitting
        self.register_buffer('mins', None)
        self.register_buffer('maxs', None)
        self.register_buffer('means', None)
        self.register_buffer('stds', None)

    @torch.no_grad()
    def fit(self, data: ArrayLike) -> "Normalizer":
        """Fit normalizer to data.

        Args:
            data: Input data of shape (N, D) or (N,)
        """
        if isinstance(data, np.ndarray):
            data = torch.from_numpy(data)

        data = data.float()
        if len(data.shape) == 1:
            data = data.unsqueeze(-1)

        mins = data.min(dim=0)[0]
        maxs = data.max(dim=0)[0]
        means = data.mean(dim=0)
        stds = data.std(dim=0, unbiased=False)

        if self.mode == NormalizerType.SAFE_LIMITS:
            for d in torch.nonzero((maxs - mins).abs() < self.CONSTANT_EPS).flatten().tolist():
                print(f"[ utils/normalization ] Constant data in dimension {d} | max = min = {maxs[d].item():.4f}")
                mins[d] -= self.eps
                maxs[d] += self.eps

        stds[stds < self.CONSTANT_EPS] = 1.0

        self.mins = mins
        self.maxs = maxs
        self.means = means
        self.stds = stds
        self.fitted = True
        return self

    def _as_tensor(self, x: ArrayLike) -> torch.Tensor:
        if not self.fitted:
            raise RuntimeError("Normalizer not fitted. Call fit() first.")
        if isinstance(x, np.ndarray):
            x = torch.from_numpy(x)
        return x.to(dtype=self.mins.dtype, device=self.mins.device)

    def normalize(self, x: ArrayLike) -> torch.Tensor:
        """Normalize input data of shape (..., D)."""
        x = self._as_tensor(x)
        if self.mode == NormalizerType.GAUSSIAN:
            return (x - self.means) / self.stds

        input_range = self.maxs - self.mins
        constant = input_range < self.CONSTANT_EPS
        # [ 0, 1 ] then [ -1, 1 ]
        x = (x - self.mins) / torch.where(constant, torch.ones_like(input_range), input_range)
        x = 2 * x - 1
        return torch.where(constant, torch.zeros_like(x), x)

    def unnormalize(self, x: ArrayLike) -> torch.Tensor:
        """Map normalized data of shape (..., D) back to the original scale.

        In the limits modes, inputs outside [-1, 1] are clipped first.
        """
        x = self._as_tensor(x)
        if self.mode == NormalizerType.GAUSSIAN:
            return x * self.stds + self.means

        if x.max() > 1 + self.UNNORMALIZE_TOL or x.min() < -1 - self.UNNORMALIZE_TOL:
            x = torch.clamp(x, -1, 1)
        x = (x + 1) / 2.
        return x * (self.maxs - self.mins) + self.mins

    def __call__(self, x: ArrayLike) -> torch.Tensor:
        """Alias for normalize."""
        return self.normalize(x)

    def state_dict(self) -> Dict:
        """Get state dictionary for saving, including mode and fit status."""
        return {
            'mode': self.mode.value,
            'eps': self.eps,
            'fitted': self.fitted,
            'mins': self.mins,
            'maxs': self.maxs,
            'means': self.means,
            'stds': self.stds,
        }

    def load_state_dict(self, state_dict: Dict):
        """Load state dictionary."""
        self.mode = NormalizerType.parse(state_dict['mode'])
        self.eps = state_dict['eps']
        self.mins = state_dict['mins']
        self.maxs = state_dict['maxs']
        self.means = state_dict['means']
        self.stds = state_dict['stds']
        self.fitted = state_dict['fitted']
        return self

    def __repr__(self):
        return (
            f"[ Normalizer ] mode: {self.mode.value} | dim: "
            f"{None if self.mins is None else self.mins.shape[0]}"
        )


class DatasetNormalizer(nn.Module):
    """One Normalizer per dataset field.

    Args:
        fields: {key: data of shape (N, D)}, e.g. 'observations' and 'actions'
        normalizer: NormalizerType (or its string value) used for every field

    Example:
        >>> normalizer = DatasetNormalizer({'observations': obs, 'actions': act}, 'limits')
        >>> norm_obs = normalizer.normalize(obs, 'observations')
        >>> act = normalizer.unnormalize(model_output, 'actions')
    """

    def __init__(self, fields: Dict[str, ArrayLike], normalizer: Union[str, NormalizerType] = "limits"):
        super().__init__()
        mode = NormalizerType.parse(normalizer)
        self.normalizers = nn.ModuleDict({
            key: Normalizer(mode).fit(data) for key, data in fields.items()
        })

    @property
    def observation_dim(self) -> int:
        return self.normalizers['observations'].mins.shape[0]

    @property
    def action_dim(self) -> int:
        return self.normalizers['actions'].mins.shape[0]

    def _get(self, key: str) -> Normalizer:
        if key not in self.normalizers:
            raise KeyError(f"No normalizer found for key: {key}")
        return self.normalizers[key]

    def normalize(self, x: ArrayLike, key: str) -> torch.Tensor:
        return self._get(key).normalize(x)

    def unnormalize(self, x: ArrayLike, key: str) -> torch.Tensor:
        return self._get(key).unnormalize(x)

    def state_dict(self) -> Dict:
        """Get state dictionary for saving: one entry per field."""
        return {key: norm.state_dict() for key, norm in self.normalizers.items()}

    def load_state_dict(self, state_dict: Dict):
        """Load state dictionary, replacing every field normalizer."""
        self.normalizers = nn.ModuleDict({
            key: Normalizer(state['mode']).load_state_dict(state) for key, state in state_dict.items()
        })
        return self

    @classmethod
    def from_state_dict(cls, state_dict: Dict) -> "DatasetNormalizer":
        """Rebuild a saved normalizer without the training data.

        Example:
            >>> torch.save(dataset.normalizer.state_dict(), "normalizer.pt")
            >>> normalizer = DatasetNormalizer.from_state_dict(torch.load("normalizer.pt"))
        """
        return cls({}).load_state_dict(state_dict)

    def __repr__(self):
        return "\n".join(f"{key}: {norm!r}" for key, norm in self.normalizers.items())
