"""
Trajectory window datasets.

SequenceDataset slices every stored episode into fixed-horizon windows of
normalized (action, observation) transitions and conditions each window on
its first observation. GoalDataset additionally conditions on the last one,
and ValueDataset adds the discounted return of each window as a target.
"""

from typing import Dict, List, Sequence, Tuple

import numpy as np
import torch
from torch.utils.data import Dataset

from .buffer import ReplayBuffer
from ..common.normalizer import DatasetNormalizer

Conditions = Dict[int, torch.Tensor]


class SequenceDataset(Dataset):
    """Fixed-horizon trajectory windows over a set of episodes.

    Args:
        episodes: List of {key: array (path_length, dim)} with at least
            'observations' and 'actions'
        horizon: Window length
        max_path_length: Episodes are padded to this length
        max_n_episodes: Replay buffer capacity
        termination_penalty: Reward penalty for terminal transitions
        use_padding: Allow windows that run into the zero padding
        normalizer: Normalizer type for every field
    """

    def __init__(
        self,
        episodes: Sequence[Dict[str, np.ndarray]],
        horizon: int = 64,
        max_path_length: int = 1000,
        max_n_episodes: int = 10000,
        termination_penalty: float = 0.0,
        use_padding: bool = True,
        normalizer: str = "limits",
    ):
        self.horizon = horizon
        self.max_path_length = max_path_length
        self.use_padding = use_padding

        fields = ReplayBuffer(max_n_episodes, max_path_length, termination_penalty)
        for episode in episodes:
            fields.add_path(episode)
        fields.finalize()

        self.fields = fields
        self.n_episodes = fields.n_episodes
        self.path_lengths = fields.path_lengths
        self.observation_dim = fields['observations'].shape[-1]
        self.action_dim = fields['actions'].shape[-1]

        self.normalizer = DatasetNormalizer(
            {key: self._flatten(fields[key]) for key in ('observations', 'actions')},
            normalizer,
        )
        self.normed_observations = self.normalize('observations')
        self.normed_actions = self.normalize('actions')
        self.indices = self.make_indices(self.path_lengths, horizon)

        print(fields)

    def _flatten(self, data: np.ndarray) -> np.ndarray:
        """Concatenate the unpadded part of every episode."""
        return np.concatenate([
            data[i, :length] for i, length in enumerate(self.path_lengths)
        ], axis=0)

    def normalize(self, key: str) -> np.ndarray:
        array = self.fields[key]
        normed = self.normalizer.normalize(array.reshape(-1, array.shape[-1]), key)
        return normed.cpu().numpy().reshape(array.shape)

    def make_indices(self, path_lengths: np.ndarray, horizon: int) -> np.ndarray:
        """(episode, start, end) for every window sampled by the dataset."""
        indices = []
        for i, path_length in enumerate(path_lengths):
            max_start = min(path_length - 1, self.max_path_length - horizon)
            if not self.use_padding:
                max_start = min(max_start, path_length - horizon)
            for start in range(max_start):
                end = start + horizon
                indices.append((i, start, end))
        return np.array(indices, dtype=np.int64).reshape(-1, 3)

    def get_conditions(self, observations: np.ndarray) -> Conditions:
        """Condition on the current observation for planning."""
        return {0: torch.from_numpy(observations[0])}

    def __len__(self) -> int:
        return len(self.indices)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, Conditions]:
        path_ind, start, end = self.indices[idx]

        observations = self.normed_observations[path_ind, start:end]
        actions = self.normed_actions[path_ind, start:end]

        conditions = self.get_conditions(observations)
        trajectories = torch.from_numpy(np.concatenate([actions, observations], axis=-1))
        return trajectories, conditions


class GoalDataset(SequenceDataset):

    def get_conditions(self, observations: np.ndarray) -> Conditions:
        """Condition on both the current observation and the last observation in the plan."""
        return {
            0: torch.from_numpy(observations[0]),
            self.horizon - 1: torch.from_numpy(observations[-1]),
        }


class ValueDataset(SequenceDataset):
    """SequenceDataset whose items also carry the discounted return.

    The target of each window is ``sum_k discount**k * rewards[start + k]``
    from the window start to the end of its episode.

    Args:
        discount: Reward discount factor
        **kwargs: Forwarded to SequenceDataset
    """

    def __init__(self, *args, discount: float = 0.99, **kwargs):
        super().__init__(*args, **kwargs)
        if 'rewards' not in self.fields:
            raise ValueError("ValueDataset requires a 'rewards' field in every episode")
        self.discount = discount
        self.discounts = (discount ** np.arange(self.max_path_length, dtype=np.float64))[:, None]

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, Conditions, torch.Tensor]:
        trajectories, conditions = super().__getitem__(idx)
        path_ind, start, _ = self.indices[idx]
        rewards = self.fields['rewards'][path_ind, start:self.path_lengths[path_ind]]
        discounts = self.discounts[:len(rewards)]
        value = (discounts * rewards).sum()
        return trajectories, conditions, torch.tensor([value], dtype=torch.float32)


def collate_batch(samples: List[tuple]) -> tuple:
    """Stack trajectories, and stack conditions key by key.

    Value targets, when the samples carry them, are stacked to (B, 1).
    """
    trajectories = torch.stack([sample[0] for sample in samples])
    keys = samples[0][1].keys()
    conditions = {t: torch.stack([sample[1][t] for sample in samples]) for t in keys}
    if len(samples[0]) > 2:
        values = torch.stack([sample[2] for sample in samples])
        return trajectories, conditions, values
    return trajectories, conditions
