"""Episode storage and trajectory window datasets."""

from .buffer import ReplayBuffer
from .io import load_episodes_hdf5
from .sequence import GoalDataset, SequenceDataset, ValueDataset, collate_batch

__all__ = [
    "ReplayBuffer",
    "load_episodes_hdf5",
    "GoalDataset",
    "SequenceDataset",
    "ValueDataset",
    "collate_batch",
]
