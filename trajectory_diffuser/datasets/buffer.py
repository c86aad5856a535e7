"""
Episode Replay Buffer

Stores whole episodes padded to a common length, one (n_episodes,
max_path_length, dim) array per field, for building trajectory windows.
"""

import numpy as np
from typing import Dict, List


def atleast_2d(x: np.ndarray) -> np.ndarray:
    x = np.asarray(x, dtype=np.float32)
    while x.ndim < 2:
        x = np.expand_dims(x, axis=-1)
    return x


class ReplayBuffer:
    """Padded episode storage.

    Args:
        max_n_episodes: Maximum number of episodes to store
        max_path_length: Episodes are zero-padded to this length
        termination_penalty: Added to the last reward of episodes that
            terminate (and did not time out)
    """

    def __init__(
        self,
        max_n_episodes: int,
        max_path_length: int,
        termination_penalty: float = 0.0,
    ):
        self.max_n_episodes = max_n_episodes
        self.max_path_length = max_path_length
        self.termination_penalty = termination_penalty

        self._dict: Dict[str, np.ndarray] = {}
        self.path_lengths = np.zeros(max_n_episodes, dtype=np.int64)
        self._count = 0

    def __repr__(self):
        return '[ datasets/buffer ] Fields:\n' + '\n'.join(
            f'    {key}: {val.shape}' for key, val in self.items()
        )

    def __getitem__(self, key: str) -> np.ndarray:
        return self._dict[key]

    def __contains__(self, key: str) -> bool:
        return key in self._dict

    @property
    def n_episodes(self) -> int:
        return self._count

    def keys(self) -> List[str]:
        return list(self._dict.keys())

    def items(self):
        return self._dict.items()

    def _allocate(self, key: str, array: np.ndarray):
        dim = array.shape[-1]
        self._dict[key] = np.zeros((self.max_n_episodes, self.max_path_length, dim), dtype=np.float32)

    def add_path(self, path: Dict[str, np.ndarray]):
        """Add one episode.

        Args:
            path: {key: array of shape (path_length, dim) or (path_length,)};
                must contain 'observations'
        """
        path_length = len(path['observations'])
        if path_length > self.max_path_length:
            raise ValueError(
                f'Path length exceeds maximum: {path_length} > {self.max_path_length}'
            )
        if self._count >= self.max_n_episodes:
            raise ValueError(f'Replay buffer is full ({self.max_n_episodes} episodes)')

        for key, val in path.items():
            array = atleast_2d(val)
            if key not in self._dict:
                self._allocate(key, array)
            self._dict[key][self._count, :path_length] = array

        # Penalize early termination
        if 'terminals' in path and 'rewards' in path and self.termination_penalty != 0:
            terminated = np.any(np.asarray(path['terminals']) > 0.5)
            timed_out = 'timeouts' in path and np.any(np.asarray(path['timeouts']) > 0.5)
            if terminated and not timed_out:
                self._dict['rewards'][self._count, path_length - 1] += self.termination_penalty

        self.path_lengths[self._count] = path_length
        self._count += 1

    def finalize(self):
        """Trim storage to the episodes actually added."""
        for key in self.keys():
            self._dict[key] = self._dict[key][:self._count]
        self.path_lengths = self.path_lengths[:self._count]
        print(f'[ datasets/buffer ] Finalized replay buffer | {self._count} episodes')
