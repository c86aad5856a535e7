"""HDF5 episode loading (ManiSkill-style ``traj_N`` groups)."""

import os
from typing import Dict, List, Optional

import numpy as np
from h5py import Dataset, File, Group

# HDF5 key -> episode field
SOURCE_KEY_TO_FIELD = {
    "obs": "observations",
    "actions": "actions",
    "rewards": "rewards",
    "terminated": "terminals",
    "truncated": "timeouts",
}


def load_content_from_h5_file(file):
    if isinstance(file, (File, Group)):
        return {key: load_content_from_h5_file(file[key]) for key in list(file.keys())}
    elif isinstance(file, Dataset):
        return file[()]
    else:
        raise NotImplementedError(f"Unsupported h5 node type: {type(file)}")


def load_episodes_hdf5(path: str, num_traj: Optional[int] = None) -> List[Dict[str, np.ndarray]]:
    """Load episodes as dicts of 'observations', 'actions' and, when present,
    'rewards', 'terminals' and 'timeouts'.

    Observations are stored with one more step than actions (the final
    state); they are trimmed to the action count.
    """
    path = os.path.expanduser(path)
    print(f"[ datasets/io ] Loading HDF5 file {path}")
    episodes = []
    with File(path, "r") as file:
        keys = sorted(file.keys(), key=lambda x: int(x.split("_")[-1]))
        if num_traj is not None:
            assert num_traj <= len(keys), f"num_traj: {num_traj} > len(keys): {len(keys)}"
            keys = keys[:num_traj]

        for key in keys:
            traj = load_content_from_h5_file(file[key])
            if isinstance(traj.get("obs"), dict):
                raise ValueError(f"{key}: dict observations are not supported, expected a flat 'obs' array")

            n_steps = len(traj["actions"])
            episode = {
                field: np.asarray(traj[source][:n_steps], dtype=np.float32)
                for source, field in SOURCE_KEY_TO_FIELD.items()
                if source in traj
            }
            episodes.append(episode)
    print(f"[ datasets/io ] Loaded {len(episodes)} episodes")
    return episodes
