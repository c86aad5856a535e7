"""
Planning policy: sample trajectories from the diffusion model and return
the first action in the environment's (unnormalized) action space.
"""

from typing import Dict, NamedTuple, Tuple, Union

import numpy as np
import torch

from .diffusion import GaussianDiffusion
from ...common.normalizer import DatasetNormalizer


class Trajectories(NamedTuple):
    actions: np.ndarray       # (batch_size, horizon, action_dim)
    observations: np.ndarray  # (batch_size, horizon, observation_dim)


class Policy:
    """Wraps a trained GaussianDiffusion for action selection.

    Args:
        diffusion_model: Trained (typically EMA) diffusion model
        normalizer: Normalizer fitted on the training dataset
    """

    def __init__(self, diffusion_model: GaussianDiffusion, normalizer: DatasetNormalizer):
        self.diffusion_model = diffusion_model
        self.normalizer = normalizer
        self.action_dim = normalizer.action_dim

    @property
    def device(self) -> torch.device:
        return self.diffusion_model.device

    def _format_conditions(
        self, conditions: Dict[int, Union[np.ndarray, torch.Tensor]], batch_size: int
    ) -> Dict[int, torch.Tensor]:
        """Normalize each condition; single observations are repeated ``batch_size`` times."""
        formatted = {}
        for t, val in conditions.items():
            val = self.normalizer.normalize(val, 'observations').to(self.device)
            if val.dim() == 1:
                val = val[None].repeat(batch_size, 1)
            formatted[t] = val
        return formatted

    @torch.no_grad()
    def __call__(
        self,
        conditions: Dict[int, Union[np.ndarray, torch.Tensor]],
        batch_size: int = 1,
        verbose: bool = False,
    ) -> Tuple[np.ndarray, Trajectories]:
        """Plan from unnormalized observation conditions.

        Returns:
            action: First action of the first sampled plan, shape (action_dim,)
            trajectories: Unnormalized sampled plans
        """
        conditions = self._format_conditions(conditions, batch_size)

        sample = self.diffusion_model.conditional_sample(conditions, verbose=verbose)

        normed_actions = sample[:, :, :self.action_dim]
        actions = self.normalizer.unnormalize(normed_actions, 'actions').cpu().numpy()

        normed_observations = sample[:, :, self.action_dim:]
        observations = self.normalizer.unnormalize(normed_observations, 'observations').cpu().numpy()

        action = actions[0, 0]
        return action, Trajectories(actions, observations)
