"""
Utility Functions for Trajectory Diffusion

Contains helper functions for:
- Random seed setting
- Device management
- Cosine noise schedule and the derived diffusion coefficients
- Timestep extraction / broadcasting
- Conditioning (pinning observations inside a trajectory)
"""

import dataclasses
import random
import numpy as np
import torch
from typing import Dict, Optional, Tuple, Union

from ..errors import ConfigError, ShapeError


def set_seed(seed: int):
    """Set random seed for reproducibility.

    Args:
        seed: Random seed
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)
    # Make CuDNN deterministic
    torch.backends.cudnn.deterministic = True
    torch.backends.cudnn.benchmark = False


def get_device(device: Optional[str] = None) -> torch.device:
    """Get the device to use for computation.

    Args:
        device: Device string ('cpu', 'cuda', 'cuda:0', etc.)
                If None, automatically selects CUDA if available.

    Returns:
        torch.device object
    """
    if device is None:
        device = "cuda" if torch.cuda.is_available() else "cpu"
    return torch.device(device)


# ============== Diffusion Noise Schedule ==============

def cosine_beta_schedule(timesteps: int, s: float = 0.008) -> torch.Tensor:
    """Cosine beta schedule (improved diffusion schedule).

    From "Improved Denoising Diffusion Probabilistic Models" (Nichol & Dhariwal, 2021).
    Computed in float64, returned as float32.

    Args:
        timesteps: Number of diffusion steps
        s: Small offset to prevent singularity near t=0

    Returns:
        Betas of shape (timesteps,), clipped to [0, 0.999]
    """
    steps = timesteps + 1
    x = torch.linspace(0, steps, steps, dtype=torch.float64)
    alphas_cumprod = torch.cos(((x / steps) + s) / (1 + s) * np.pi * 0.5) ** 2
    alphas_cumprod = alphas_cumprod / alphas_cumprod[0]
    betas = 1 - (alphas_cumprod[1:] / alphas_cumprod[:-1])
    betas = torch.clamp(betas, min=0, max=0.999)
    return betas.float()


@dataclasses.dataclass(frozen=True)
class DiffusionSchedule:
    """Immutable set of per-timestep diffusion coefficients.

    Every field is a 1D tensor of length ``n_timesteps``. Instances are never
    mutated; ``to`` returns a new schedule on the requested device.
    """
    betas: torch.Tensor
    alphas_cumprod: torch.Tensor
    alphas_cumprod_prev: torch.Tensor
    # q(x_t | x_{t-1}) and friends
    sqrt_alphas_cumprod: torch.Tensor
    sqrt_one_minus_alphas_cumprod: torch.Tensor
    log_one_minus_alphas_cumprod: torch.Tensor
    sqrt_recip_alphas_cumprod: torch.Tensor
    sqrt_recipm1_alphas_cumprod: torch.Tensor
    # posterior q(x_{t-1} | x_t, x_0)
    posterior_variance: torch.Tensor
    posterior_log_variance_clipped: torch.Tensor
    posterior_mean_coef1: torch.Tensor
    posterior_mean_coef2: torch.Tensor

    @property
    def n_timesteps(self) -> int:
        return self.betas.shape[0]

    def to(self, device: Union[str, torch.device]) -> "DiffusionSchedule":
        """Return a copy of the schedule on ``device``."""
        return DiffusionSchedule(**{
            field.name: getattr(self, field.name).to(device)
            for field in dataclasses.fields(self)
        })


def make_schedule(n_timesteps: int, s: float = 0.008) -> DiffusionSchedule:
    """Derive the full diffusion schedule from the cosine betas.

    Args:
        n_timesteps: Number of diffusion steps (>= 2)
        s: Cosine schedule offset

    Returns:
        DiffusionSchedule

    Raises:
        ConfigError: If n_timesteps < 2 or ``s`` yields a degenerate schedule.
            The schedule is stored in float32, so betas below float32
            resolution (~1e-7, e.g. s=0 with tens of thousands of steps) leave
            alphas_cumprod flat; that case is reported separately.
    """
    if n_timesteps < 2:
        raise ConfigError(f"n_timesteps must be >= 2, got {n_timesteps}")

    betas = cosine_beta_schedule(n_timesteps, s)
    alphas = 1. - betas
    alphas_cumprod = torch.cumprod(alphas, dim=0)
    alphas_cumprod_prev = torch.cat([torch.ones(1), alphas_cumprod[:-1]])

    if not torch.isfinite(betas).all():
        raise ConfigError(f"Cosine schedule with s={s} is not finite")
    decreasing = alphas_cumprod[1:] < alphas_cumprod[:-1]
    if not decreasing.all():
        eps = torch.finfo(alphas_cumprod.dtype).eps
        if (betas[1:][~decreasing] < eps).all():
            raise ConfigError(
                f"n_timesteps={n_timesteps} with s={s} is below float32 resolution: betas under "
                f"{eps:.1e} leave alphas_cumprod flat; use fewer steps or a larger s"
            )
        raise ConfigError(
            f"Cosine schedule with s={s} is degenerate: alphas_cumprod is not strictly decreasing"
        )

    # Posterior variance is 0 at t=0, so the log is clipped
    posterior_variance = betas * (1. - alphas_cumprod_prev) / (1. - alphas_cumprod)

    return DiffusionSchedule(
        betas=betas,
        alphas_cumprod=alphas_cumprod,
        alphas_cumprod_prev=alphas_cumprod_prev,
        sqrt_alphas_cumprod=torch.sqrt(alphas_cumprod),
        sqrt_one_minus_alphas_cumprod=torch.sqrt(1. - alphas_cumprod),
        log_one_minus_alphas_cumprod=torch.log(1. - alphas_cumprod),
        sqrt_recip_alphas_cumprod=torch.sqrt(1. / alphas_cumprod),
        sqrt_recipm1_alphas_cumprod=torch.sqrt(1. / alphas_cumprod - 1),
        posterior_variance=posterior_variance,
        posterior_log_variance_clipped=torch.log(torch.clamp(posterior_variance, min=1e-20)),
        posterior_mean_coef1=betas * torch.sqrt(alphas_cumprod_prev) / (1. - alphas_cumprod),
        posterior_mean_coef2=(1. - alphas_cumprod_prev) * torch.sqrt(alphas) / (1. - alphas_cumprod),
    )


def extract(a: torch.Tensor, t: torch.Tensor, x_shape: Tuple[int, ...]) -> torch.Tensor:
    """Extract values from 1D array at indices and reshape for broadcasting.

    The result lives on ``t.device`` so it composes with tensors that are
    part of an autograd graph on that device.

    Args:
        a: 1D tensor of values indexed by timestep
        t: Tensor of indices, shape (batch_size,)
        x_shape: Shape of the tensor the result is broadcast against

    Returns:
        Extracted values of shape (batch_size, 1, 1, ...)
    """
    b = t.shape[0]
    out = a.to(t.device).gather(-1, t)
    return out.reshape(b, *((1,) * (len(x_shape) - 1)))


# ============== Conditioning ==============

def apply_conditioning(
    x: torch.Tensor,
    conditions: Dict[int, torch.Tensor],
    action_dim: int,
) -> torch.Tensor:
    """Pin observation values at the conditioned trajectory timesteps.

    Computed as ``x * mask + values`` so gradients keep flowing to every
    unconditioned entry of ``x``.

    Args:
        x: Trajectory of shape (B, horizon, transition_dim)
        conditions: {timestep: observation} with observation (B, obs_dim) or (obs_dim,)
        action_dim: Number of leading action channels

    Returns:
        New trajectory with x[:, t, action_dim:] replaced by the conditions
    """
    if not conditions:
        return x

    horizon = x.shape[1]
    observation_dim = x.shape[-1] - action_dim
    mask = torch.ones_like(x)
    values = torch.zeros_like(x)
    for t, val in conditions.items():
        if not 0 <= t < horizon:
            raise ShapeError(f"Condition timestep {t} outside horizon [0, {horizon})")
        if val.shape[-1] != observation_dim:
            raise ShapeError(
                f"Condition at t={t} has width {val.shape[-1]}, expected observation_dim={observation_dim}"
            )
        if val.dim() > 1 and val.shape[0] != x.shape[0]:
            raise ShapeError(
                f"Condition at t={t} has batch size {val.shape[0]}, trajectory batch is {x.shape[0]}"
            )
        mask[:, t, action_dim:] = 0.
        values[:, t, action_dim:] = val.to(dtype=x.dtype, device=x.device)
    return x * mask + values
