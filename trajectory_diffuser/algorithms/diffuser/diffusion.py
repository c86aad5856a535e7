"""
Gaussian diffusion over state/action trajectories.

Forward process:  q(x_t | x_0) = N(sqrt(alpha_bar_t) * x_0, (1 - alpha_bar_t) * I)
Reverse process:  p(x_{t-1} | x_t) = q(x_{t-1} | x_t, x_0_hat) with x_0_hat predicted
                  by the denoiser; conditioned observations are re-pinned after
                  every step.

Training minimizes a weighted L1/L2 loss between the denoiser output and the
injected noise (or the clean trajectory when predict_epsilon=False).

ValueDiffusion reuses the forward process to train a value network on
noised trajectories, regressing their discounted return.
"""

from typing import Dict, Optional, Tuple, Union

import torch
import torch.nn as nn
from tqdm import tqdm

from ...common.losses import LossResult, LossType, get_loss_weights
from ...common.utils import apply_conditioning, extract, make_schedule
from ...errors import ConfigError, ShapeError


class GaussianDiffusion(nn.Module):
    """DDPM over fixed-length trajectories with observation conditioning.

    Args:
        model: Denoiser with forward(x, cond, t) -> tensor shaped like x
        horizon: Trajectory length
        observation_dim: Observation channels
        action_dim: Action channels (leading channels of each transition)
        n_timesteps: Number of diffusion steps
        loss_type: "l1" or "l2" (or a LossType)
        clip_denoised: Clip the reconstructed x_0 to [-1, 1] while sampling
        predict_epsilon: Denoiser predicts injected noise (True) or x_0 (False)
        action_weight: Loss weight of the first action
        loss_discount: Per-timestep loss discount
        loss_weights: {observation_index: multiplier} for the loss
        schedule_s: Cosine schedule offset
        generator: Random source for every noise and timestep draw
    """

    def __init__(
        self,
        model: nn.Module,
        horizon: int,
        observation_dim: int,
        action_dim: int,
        n_timesteps: int = 1000,
        loss_type: Union[str, LossType] = "l1",
        clip_denoised: bool = False,
        predict_epsilon: bool = True,
        action_weight: float = 1.0,
        loss_discount: float = 1.0,
        loss_weights: Optional[Dict[int, float]] = None,
        schedule_s: float = 0.008,
        generator: Optional[torch.Generator] = None,
    ):
        super().__init__()
        self.horizon = horizon
        self.observation_dim = observation_dim
        self.action_dim = action_dim
        self.transition_dim = observation_dim + action_dim
        self.model = model

        self.n_timesteps = int(n_timesteps)
        self.clip_denoised = clip_denoised
        self.predict_epsilon = predict_epsilon
        self.generator = generator

        # Plain attribute, not a buffer: re-derived from (n_timesteps, s) on load
        self.schedule = make_schedule(self.n_timesteps, schedule_s)

        self.loss_fn = self._build_loss(LossType.parse(loss_type), action_weight, loss_discount, loss_weights)

    def _build_loss(self, loss_type: LossType, action_weight, loss_discount, loss_weights) -> nn.Module:
        if loss_type.is_value:
            raise ConfigError(f"{loss_type.value!r} scores values, use ValueDiffusion")
        weights = get_loss_weights(
            self.horizon, self.transition_dim, self.action_dim,
            action_weight, loss_discount, loss_weights,
        )
        return loss_type.build(weights, self.action_dim)

    # ==================== Random source ====================

    def _randn(self, shape, device) -> torch.Tensor:
        if self.generator is None:
            return torch.randn(shape, device=device)
        return torch.randn(shape, generator=self.generator, device=self.generator.device).to(device)

    def _randint(self, high: int, batch_size: int, device) -> torch.Tensor:
        if self.generator is None:
            return torch.randint(0, high, (batch_size,), device=device).long()
        return torch.randint(
            0, high, (batch_size,), generator=self.generator, device=self.generator.device
        ).to(device).long()

    def _check_trajectory(self, x: torch.Tensor, t: Optional[torch.Tensor] = None):
        if x.dim() != 3 or x.shape[-1] != self.transition_dim:
            raise ShapeError(
                f"Expected trajectory of shape (B, H, {self.transition_dim}), got {tuple(x.shape)}"
            )
        if t is not None and t.shape[0] != x.shape[0]:
            raise ShapeError(
                f"Timestep batch of length {t.shape[0]} does not match trajectory batch {x.shape[0]}"
            )

    # ==================== Sampling ====================

    def predict_start_from_noise(self, x_t: torch.Tensor, t: torch.Tensor, noise: torch.Tensor) -> torch.Tensor:
        """Reconstruct x_0 from x_t and the denoiser output.

        If predict_epsilon, the model output is the (scaled) noise; otherwise
        the model predicts x_0 directly.
        """
        if self.predict_epsilon:
            return (
                extract(self.schedule.sqrt_recip_alphas_cumprod, t, x_t.shape) * x_t -
                extract(self.schedule.sqrt_recipm1_alphas_cumprod, t, x_t.shape) * noise
            )
        return noise

    def q_posterior(
        self, x_start: torch.Tensor, x_t: torch.Tensor, t: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Mean, variance and clipped log-variance of q(x_{t-1} | x_t, x_0)."""
        posterior_mean = (
            extract(self.schedule.posterior_mean_coef1, t, x_t.shape) * x_start +
            extract(self.schedule.posterior_mean_coef2, t, x_t.shape) * x_t
        )
        posterior_variance = extract(self.schedule.posterior_variance, t, x_t.shape)
        posterior_log_variance_clipped = extract(self.schedule.posterior_log_variance_clipped, t, x_t.shape)
        return posterior_mean, posterior_variance, posterior_log_variance_clipped

    def p_mean_variance(
        self, x: torch.Tensor, cond: Dict[int, torch.Tensor], t: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        x_recon = self.predict_start_from_noise(x, t=t, noise=self.model(x, cond, t))

        if self.clip_denoised:
            x_recon = x_recon.clamp(-1., 1.)

        return self.q_posterior(x_start=x_recon, x_t=x, t=t)

    @torch.no_grad()
    def p_sample(self, x: torch.Tensor, cond: Dict[int, torch.Tensor], t: torch.Tensor) -> torch.Tensor:
        """One reverse step x_t -> x_{t-1}."""
        self._check_trajectory(x, t)
        b = x.shape[0]
        model_mean, _, model_log_variance = self.p_mean_variance(x=x, cond=cond, t=t)
        noise = self._randn(x.shape, x.device)
        # No noise at t=0
        nonzero_mask = (1 - (t == 0).float()).reshape(b, *((1,) * (len(x.shape) - 1)))
        return model_mean + nonzero_mask * (0.5 * model_log_variance).exp() * noise

    @torch.no_grad()
    def p_sample_loop(
        self,
        shape: Tuple[int, int, int],
        cond: Dict[int, torch.Tensor],
        verbose: bool = False,
        return_chain: bool = False,
    ) -> Union[torch.Tensor, Tuple[torch.Tensor, torch.Tensor]]:
        """Run the reverse chain from pure noise, t = T-1 down to 0.

        Args:
            shape: (batch_size, horizon, transition_dim)
            cond: Conditioning map, re-applied after every step
            verbose: Show a tqdm progress bar
            return_chain: Also return every intermediate x, stacked on dim 1

        Returns:
            x_0, or (x_0, chain) with chain of shape (B, T + 1, horizon, transition_dim)
        """
        device = self.device
        batch_size = shape[0]
        x = self._randn(shape, device)
        x = apply_conditioning(x, cond, self.action_dim)

        chain = [x] if return_chain else None

        for i in tqdm(reversed(range(0, self.n_timesteps)), total=self.n_timesteps,
                      desc="Sampling", disable=not verbose, leave=False):
            timesteps = torch.full((batch_size,), i, device=device, dtype=torch.long)
            x = self.p_sample(x, cond, timesteps)
            x = apply_conditioning(x, cond, self.action_dim)

            if return_chain:
                chain.append(x)

        if return_chain:
            return x, torch.stack(chain, dim=1)
        return x

    @torch.no_grad()
    def conditional_sample(
        self,
        cond: Dict[int, torch.Tensor],
        horizon: Optional[int] = None,
        batch_size: Optional[int] = None,
        verbose: bool = False,
        return_chain: bool = False,
    ):
        """Sample trajectories consistent with ``cond``.

        Batch size is taken from the leading dimension of the conditioning
        tensors when they are batched, otherwise from ``batch_size`` (default 1).
        """
        device = self.device
        horizon = horizon or self.horizon

        batched = [val for val in cond.values() if val.dim() > 1]
        if batched:
            batch_size = batched[0].shape[0]
        elif batch_size is None:
            batch_size = 1

        cond = {t: val.to(device) for t, val in cond.items()}
        shape = (batch_size, horizon, self.transition_dim)
        return self.p_sample_loop(shape, cond, verbose=verbose, return_chain=return_chain)

    @property
    def device(self) -> torch.device:
        """Device the denoiser's parameters live on."""
        param = next(self.model.parameters(), None)
        return param.device if param is not None else torch.device("cpu")

    # ==================== Training ====================

    def q_sample(self, x_start: torch.Tensor, t: torch.Tensor, noise: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Forward diffusion: noise x_0 to timestep t."""
        if noise is None:
            noise = self._randn(x_start.shape, x_start.device)

        return (
            extract(self.schedule.sqrt_alphas_cumprod, t, x_start.shape) * x_start +
            extract(self.schedule.sqrt_one_minus_alphas_cumprod, t, x_start.shape) * noise
        )

    def p_losses(self, x_start: torch.Tensor, cond: Dict[int, torch.Tensor], t: torch.Tensor) -> LossResult:
        self._check_trajectory(x_start, t)
        noise = self._randn(x_start.shape, x_start.device)

        x_noisy = self.q_sample(x_start=x_start, t=t, noise=noise)
        x_noisy = apply_conditioning(x_noisy, cond, self.action_dim)

        x_recon = self.model(x_noisy, cond, t)
        x_recon = apply_conditioning(x_recon, cond, self.action_dim)

        if self.predict_epsilon:
            return self.loss_fn(x_recon, noise)
        return self.loss_fn(x_recon, x_start)

    def loss(self, x: torch.Tensor, cond: Dict[int, torch.Tensor]) -> LossResult:
        """Training loss at a uniformly drawn timestep per batch element."""
        self._check_trajectory(x)
        batch_size = len(x)
        t = self._randint(self.n_timesteps, batch_size, x.device)
        return self.p_losses(x, cond, t)

    def forward(self, cond: Dict[int, torch.Tensor], *args, **kwargs):
        return self.conditional_sample(cond, *args, **kwargs)


class ValueDiffusion(GaussianDiffusion):
    """Value function trained on noised trajectories.

    ``model`` maps (x_t, cond, t) to (B, 1) values, e.g. TemporalValue.
    Only the forward process is used; the target is the discounted return of
    the clean trajectory.
    """

    def __init__(
        self,
        model: nn.Module,
        horizon: int,
        observation_dim: int,
        action_dim: int,
        n_timesteps: int = 1000,
        loss_type: Union[str, LossType] = "value_l2",
        schedule_s: float = 0.008,
        generator: Optional[torch.Generator] = None,
    ):
        super().__init__(
            model, horizon, observation_dim, action_dim,
            n_timesteps=n_timesteps,
            loss_type=loss_type,
            schedule_s=schedule_s,
            generator=generator,
        )

    def _build_loss(self, loss_type: LossType, *args) -> nn.Module:
        if not loss_type.is_value:
            raise ConfigError(f"ValueDiffusion needs a value loss, got {loss_type.value!r}")
        return loss_type.build()

    def p_losses(
        self, x_start: torch.Tensor, cond: Dict[int, torch.Tensor], target: torch.Tensor, t: torch.Tensor
    ) -> LossResult:
        self._check_trajectory(x_start, t)
        noise = self._randn(x_start.shape, x_start.device)

        x_noisy = self.q_sample(x_start=x_start, t=t, noise=noise)
        x_noisy = apply_conditioning(x_noisy, cond, self.action_dim)

        pred = self.model(x_noisy, cond, t)
        if pred.shape != target.shape:
            raise ShapeError(f"Value target of shape {tuple(target.shape)} does not match prediction {tuple(pred.shape)}")
        return self.loss_fn(pred, target)

    def loss(self, x: torch.Tensor, cond: Dict[int, torch.Tensor], target: torch.Tensor) -> LossResult:
        self._check_trajectory(x)
        t = self._randint(self.n_timesteps, len(x), x.device)
        return self.p_losses(x, cond, target, t)

    def forward(self, x: torch.Tensor, cond: Dict[int, torch.Tensor], t: torch.Tensor) -> torch.Tensor:
        return self.model(x, cond, t)
