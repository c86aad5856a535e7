"""
Neural Network Modules for Trajectory Diffusion

Contains:
- SinusoidalPosEmb: Sinusoidal diffusion-timestep encoding
- Downsample1d / Upsample1d: Strided resolution changes along the horizon
- Conv1dBlock: Conv1d --> GroupNorm --> Mish
- ResidualTemporalBlock: Two Conv1dBlocks with additive timestep injection
- TemporalUnet: 1D U-Net denoiser over (horizon, transition_dim) trajectories
- TemporalValue: U-Net encoder with an MLP head predicting trajectory values
"""

import math
import torch
import torch.nn as nn
from typing import Dict, Optional, Sequence

from ..errors import ConfigError, ShapeError


# ============================================================================
# 1D U-Net Architecture over trajectories
# ============================================================================

class SinusoidalPosEmb(nn.Module):
    """Sinusoidal positional embedding for diffusion timestep.

    Standard positional encoding used in transformers and diffusion models.
    """

    def __init__(self, dim: int):
        super().__init__()
        self.dim = dim

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Compute sinusoidal embedding.

        Args:
            x: Timestep tensor of shape (batch_size,)

        Returns:
            Embedding of shape (batch_size, dim)
        """
        device = x.device
        half_dim = self.dim // 2
        emb = math.log(10000) / (half_dim - 1)
        emb = torch.exp(torch.arange(half_dim, device=device) * -emb)
        emb = x.float()[:, None] * emb[None, :]
        emb = torch.cat((emb.sin(), emb.cos()), dim=-1)
        return emb


class Downsample1d(nn.Module):
    """Halves the horizon with a stride-2 convolution."""

    def __init__(self, dim: int):
        super().__init__()
        self.conv = nn.Conv1d(dim, dim, 3, 2, 1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.conv(x)


class Upsample1d(nn.Module):
    """Doubles the horizon with a transposed convolution."""

    def __init__(self, dim: int):
        super().__init__()
        self.conv = nn.ConvTranspose1d(dim, dim, 4, 2, 1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.conv(x)


class Conv1dBlock(nn.Module):
    """Conv1d --> GroupNorm --> Mish activation block."""

    def __init__(
        self,
        inp_channels: int,
        out_channels: int,
        kernel_size: int,
        n_groups: int = 8,
    ):
        super().__init__()
        self.block = nn.Sequential(
            nn.Conv1d(inp_channels, out_channels, kernel_size, padding=kernel_size // 2),
            nn.GroupNorm(n_groups, out_channels),
            nn.Mish(),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.block(x)


class ResidualTemporalBlock(nn.Module):
    """Residual block with additive timestep injection.

    x is passed through 2 Conv1dBlock stacked together with a residual
    connection. The time embedding is projected to out_channels and added
    after the first block, broadcast along the horizon.
    """

    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        embed_dim: int,
        kernel_size: int = 5,
        n_groups: int = 8,
    ):
        super().__init__()

        self.blocks = nn.ModuleList([
            Conv1dBlock(in_channels, out_channels, kernel_size, n_groups=n_groups),
            Conv1dBlock(out_channels, out_channels, kernel_size, n_groups=n_groups),
        ])

        self.time_mlp = nn.Sequential(
            nn.Mish(),
            nn.Linear(embed_dim, out_channels),
            nn.Unflatten(-1, (-1, 1))  # (B, out_channels) -> (B, out_channels, 1)
        )

        # Residual connection
        self.residual_conv = nn.Conv1d(in_channels, out_channels, 1) \
            if in_channels != out_channels else nn.Identity()

    def forward(self, x: torch.Tensor, t: torch.Tensor) -> torch.Tensor:
        """
        Args:
            x: Input tensor of shape (batch_size, in_channels, horizon)
            t: Time embedding of shape (batch_size, embed_dim)

        Returns:
            Output tensor of shape (batch_size, out_channels, horizon)
        """
        out = self.blocks[0](x) + self.time_mlp(t)
        out = self.blocks[1](out)
        return out + self.residual_conv(x)


class TemporalUnet(nn.Module):
    """1D U-Net denoiser over state/action trajectories.

    Architecture:
    - Encoder: pairs of ResidualTemporalBlock, each level followed by downsampling
      (identity on the deepest level)
    - Middle: two ResidualTemporalBlock without resolution change
    - Decoder: skip concatenation, pairs of ResidualTemporalBlock and upsampling,
      one level fewer than the encoder
    - Final: Conv1dBlock at base width and a 1x1 projection to transition_dim

    Args:
        horizon: Trajectory length, divisible by 2 ** (len(dim_mults) - 1)
        transition_dim: action_dim + observation_dim
        cond_dim: Observation dimension, accepted for interface parity and unused
        dim: Base channel width and time embedding width
        dim_mults: Channel multipliers, one per U-Net level
        kernel_size: Conv kernel size
        n_groups: Number of groups for GroupNorm
    """

    def __init__(
        self,
        horizon: int,
        transition_dim: int,
        cond_dim: Optional[int] = None,
        dim: int = 32,
        dim_mults: Sequence[int] = (1, 2, 4, 8),
        kernel_size: int = 5,
        n_groups: int = 8,
    ):
        super().__init__()

        if len(dim_mults) == 0:
            raise ConfigError("dim_mults must contain at least one multiplier")

        dims = [transition_dim, *map(lambda m: dim * m, dim_mults)]
        in_out = list(zip(dims[:-1], dims[1:]))
        self.downsample_factor = 2 ** (len(dim_mults) - 1)

        if dim < 4 or dim % 2 != 0:
            raise ConfigError(f"dim must be an even number >= 4, got {dim}")
        if horizon % self.downsample_factor != 0:
            raise ConfigError(
                f"horizon={horizon} is not divisible by {self.downsample_factor} "
                f"(required by {len(dim_mults)} U-Net levels)"
            )
        for width in dims[1:]:
            if width % n_groups != 0:
                raise ConfigError(f"Channel width {width} is not divisible by n_groups={n_groups}")

        self.horizon = horizon
        self.transition_dim = transition_dim
        self.cond_dim = cond_dim
        print(f'[ models/temporal ] Channel dimensions: {in_out}')

        time_dim = dim
        self.time_mlp = nn.Sequential(
            SinusoidalPosEmb(dim),
            nn.Linear(dim, dim * 4),
            nn.Mish(),
            nn.Linear(dim * 4, dim),
        )

        self.downs = nn.ModuleList([])
        for ind, (dim_in, dim_out) in enumerate(in_out):
            is_last = ind >= (len(in_out) - 1)
            self.downs.append(nn.ModuleList([
                ResidualTemporalBlock(dim_in, dim_out, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                ResidualTemporalBlock(dim_out, dim_out, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                Downsample1d(dim_out) if not is_last else nn.Identity()
            ]))

        mid_dim = dims[-1]
        self.mid_block1 = ResidualTemporalBlock(mid_dim, mid_dim, embed_dim=time_dim,
                                                kernel_size=kernel_size, n_groups=n_groups)
        self.mid_block2 = ResidualTemporalBlock(mid_dim, mid_dim, embed_dim=time_dim,
                                                kernel_size=kernel_size, n_groups=n_groups)

        # One up level per genuine downsampling, each restoring 2x the horizon
        self.ups = nn.ModuleList([])
        for dim_in, dim_out in reversed(in_out[1:]):
            self.ups.append(nn.ModuleList([
                ResidualTemporalBlock(dim_out * 2, dim_in, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                ResidualTemporalBlock(dim_in, dim_in, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                Upsample1d(dim_in),
            ]))

        self.final_conv = nn.Sequential(
            Conv1dBlock(dims[1], dims[1], kernel_size=kernel_size, n_groups=n_groups),
            nn.Conv1d(dims[1], transition_dim, 1),
        )

        n_params = sum(p.numel() for p in self.parameters())
        print(f"[ models/temporal ] TemporalUnet: {n_params / 1e6:.2f}M parameters")

    def forward(
        self,
        x: torch.Tensor,
        cond: Optional[Dict[int, torch.Tensor]],
        time: torch.Tensor,
    ) -> torch.Tensor:
        """Predict noise (or the clean trajectory) for a noisy trajectory.

        Args:
            x: Noisy trajectory of shape (B, horizon, transition_dim)
            cond: Conditioning map; enforced outside the network, ignored here
            time: Diffusion timesteps of shape (B,)

        Returns:
            Tensor of shape (B, horizon, transition_dim)
        """
        if x.shape[-1] != self.transition_dim:
            raise ShapeError(
                f"Expected {self.transition_dim} trajectory channels, got {x.shape[-1]}"
            )
        if x.shape[1] % self.downsample_factor != 0:
            raise ShapeError(
                f"Trajectory length {x.shape[1]} is not divisible by {self.downsample_factor}"
            )

        x = x.moveaxis(-1, -2)  # (B, H, C) -> (B, C, H)

        t = self.time_mlp(time)
        h = []

        for resnet, resnet2, downsample in self.downs:
            x = resnet(x, t)
            x = resnet2(x, t)
            h.append(x)
            x = downsample(x)

        x = self.mid_block1(x, t)
        x = self.mid_block2(x, t)

        for resnet, resnet2, upsample in self.ups:
            x = torch.cat((x, h.pop()), dim=1)
            x = resnet(x, t)
            x = resnet2(x, t)
            x = upsample(x)

        x = self.final_conv(x)

        x = x.moveaxis(-1, -2)  # (B, C, H) -> (B, H, C)
        return x


class TemporalValue(nn.Module):
    """Trajectory value network: the U-Net encoder followed by an MLP head.

    Every level applies two ResidualTemporalBlock and halves the horizon. The
    flattened features are concatenated with the time embedding and mapped to
    ``out_dim`` values per trajectory.

    Args:
        horizon: Trajectory length
        transition_dim: action_dim + observation_dim
        cond_dim: Observation dimension, accepted for interface parity and unused
        dim: Base channel width
        time_dim: Time embedding width (defaults to ``dim``)
        out_dim: Number of outputs per trajectory
        dim_mults: Channel multipliers, one per level
        kernel_size: Conv kernel size
        n_groups: Number of groups for GroupNorm
    """

    def __init__(
        self,
        horizon: int,
        transition_dim: int,
        cond_dim: Optional[int] = None,
        dim: int = 32,
        time_dim: Optional[int] = None,
        out_dim: int = 1,
        dim_mults: Sequence[int] = (1, 2, 4, 8),
        kernel_size: int = 5,
        n_groups: int = 8,
    ):
        super().__init__()

        if len(dim_mults) == 0:
            raise ConfigError("dim_mults must contain at least one multiplier")
        if dim < 4 or dim % 2 != 0:
            raise ConfigError(f"dim must be an even number >= 4, got {dim}")

        dims = [transition_dim, *map(lambda m: dim * m, dim_mults)]
        in_out = list(zip(dims[:-1], dims[1:]))
        for width in dims[1:]:
            if width % n_groups != 0:
                raise ConfigError(f"Channel width {width} is not divisible by n_groups={n_groups}")

        self.horizon = horizon
        self.transition_dim = transition_dim
        self.cond_dim = cond_dim
        print(f'[ models/temporal ] TemporalValue channel dimensions: {in_out}')

        time_dim = time_dim or dim
        self.time_mlp = nn.Sequential(
            SinusoidalPosEmb(dim),
            nn.Linear(dim, dim * 4),
            nn.Mish(),
            nn.Linear(dim * 4, time_dim),
        )

        self.blocks = nn.ModuleList([])
        for dim_in, dim_out in in_out:
            self.blocks.append(nn.ModuleList([
                ResidualTemporalBlock(dim_in, dim_out, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                ResidualTemporalBlock(dim_out, dim_out, embed_dim=time_dim,
                                      kernel_size=kernel_size, n_groups=n_groups),
                Downsample1d(dim_out),
            ]))
            horizon = (horizon + 1) // 2  # stride-2 conv with padding 1

        fc_dim = dims[-1] * max(horizon, 1)
        self.final_block = nn.Sequential(
            nn.Linear(fc_dim + time_dim, fc_dim // 2),
            nn.Mish(),
            nn.Linear(fc_dim // 2, out_dim),
        )

        n_params = sum(p.numel() for p in self.parameters())
        print(f"[ models/temporal ] TemporalValue: {n_params / 1e6:.2f}M parameters")

    def forward(
        self,
        x: torch.Tensor,
        cond: Optional[Dict[int, torch.Tensor]],
        time: torch.Tensor,
    ) -> torch.Tensor:
        """
        Args:
            x: Trajectory of shape (B, horizon, transition_dim)
            cond: Conditioning map, ignored
            time: Diffusion timesteps of shape (B,)

        Returns:
            Values of shape (B, out_dim)
        """
        if x.shape[-1] != self.transition_dim or x.shape[1] != self.horizon:
            raise ShapeError(
                f"Expected trajectory of shape (B, {self.horizon}, {self.transition_dim}), "
                f"got {tuple(x.shape)}"
            )

        x = x.moveaxis(-1, -2)  # (B, H, C) -> (B, C, H)

        t = self.time_mlp(time)

        for resnet, resnet2, downsample in self.blocks:
            x = resnet(x, t)
            x = resnet2(x, t)
            x = downsample(x)

        x = x.reshape(len(x), -1)
        return self.final_block(torch.cat([x, t], dim=-1))
