"""
Test ReplayBuffer, SequenceDataset/GoalDataset/ValueDataset and HDF5 loading.

Run with:
    python -m trajectory_diffuser.tests.test_datasets
"""

import os
import tempfile

import numpy as np
import torch

OBS_DIM = 3
ACTION_DIM = 2


def make_episodes(path_lengths, seed=0):
    rng = np.random.default_rng(seed)
    episodes = []
    for length in path_lengths:
        terminals = np.zeros(length, dtype=np.float32)
        terminals[-1] = 1.0
        episodes.append({
            "observations": rng.normal(size=(length, OBS_DIM)).astype(np.float32),
            "actions": rng.uniform(-1, 1, size=(length, ACTION_DIM)).astype(np.float32),
            "rewards": rng.uniform(size=length).astype(np.float32),
            "terminals": terminals,
        })
    return episodes


def test_replay_buffer():
    """Episodes are zero-padded and trimmed on finalize()."""
    print("\n" + "=" * 60)
    print("Test: ReplayBuffer add_path() / finalize()")
    print("=" * 60)

    from trajectory_diffuser.datasets import ReplayBuffer

    episodes = make_episodes([5, 8])
    buffer = ReplayBuffer(max_n_episodes=10, max_path_length=10)
    for episode in episodes:
        buffer.add_path(episode)
    buffer.finalize()

    assert buffer.n_episodes == 2
    assert buffer["observations"].shape == (2, 10, OBS_DIM), f"Unexpected shape {buffer['observations'].shape}"
    assert buffer["rewards"].shape == (2, 10, 1), "1D fields are stored with a trailing dim"
    assert buffer.path_lengths.tolist() == [5, 8]
    assert np.array_equal(buffer["observations"][0, :5], episodes[0]["observations"])
    assert np.all(buffer["observations"][0, 5:] == 0), "Padding should be zero"
    print(buffer)

    try:
        buffer_small = ReplayBuffer(max_n_episodes=2, max_path_length=4)
        buffer_small.add_path(episodes[0])
    except ValueError as e:
        print(f"✓ Rejected long path: {e}")
    else:
        raise AssertionError("Path longer than max_path_length should raise ValueError")


def test_termination_penalty():
    """Terminal (non-timeout) episodes get the penalty on their last reward."""
    print("\n" + "=" * 60)
    print("Test: ReplayBuffer termination penalty")
    print("=" * 60)

    from trajectory_diffuser.datasets import ReplayBuffer

    episodes = make_episodes([4, 4])
    episodes[1]["timeouts"] = np.ones(4, dtype=np.float32)

    buffer = ReplayBuffer(max_n_episodes=2, max_path_length=4, termination_penalty=-100.0)
    for episode in episodes:
        buffer.add_path(episode)
    buffer.finalize()

    assert np.isclose(buffer["rewards"][0, 3, 0], episodes[0]["rewards"][3] - 100.0), "Penalty not applied"
    assert np.isclose(buffer["rewards"][1, 3, 0], episodes[1]["rewards"][3]), "Timed-out episode not penalized"
    assert np.isclose(buffer["rewards"][0, 2, 0], episodes[0]["rewards"][2]), "Only the last reward changes"
    print("✓ Penalty applied to terminal episodes only")


def test_make_indices():
    """Window counts with and without padding."""
    print("\n" + "=" * 60)
    print("Test: SequenceDataset make_indices()")
    print("=" * 60)

    from trajectory_diffuser.datasets import SequenceDataset

    episodes = make_episodes([10, 6])
    padded = SequenceDataset(episodes, horizon=4, max_path_length=20, max_n_episodes=5, use_padding=True)
    unpadded = SequenceDataset(episodes, horizon=4, max_path_length=20, max_n_episodes=5, use_padding=False)

    # max_start = min(path_length - 1, max_path_length - horizon), starts in [0, max_start)
    assert len(padded) == 9 + 5, f"Expected 14 padded windows, got {len(padded)}"
    # without padding max_start is also capped at path_length - horizon
    assert len(unpadded) == 6 + 2, f"Expected 8 unpadded windows, got {len(unpadded)}"
    assert np.all(unpadded.indices[:, 2] - unpadded.indices[:, 1] == 4)
    assert np.all(unpadded.indices[:, 2] <= np.array([10, 6])[unpadded.indices[:, 0]]), \
        "Unpadded windows must end inside their episode"
    print(f"✓ {len(padded)} padded / {len(unpadded)} unpadded windows")


def test_sequence_item():
    """Items are (trajectory, {0: first observation}) with actions first."""
    print("\n" + "=" * 60)
    print("Test: SequenceDataset __getitem__()")
    print("=" * 60)

    from trajectory_diffuser.datasets import SequenceDataset

    episodes = make_episodes([12, 9])
    dataset = SequenceDataset(episodes, horizon=4, max_path_length=16, max_n_episodes=5)
    traj, cond = dataset[3]

    assert traj.shape == (4, ACTION_DIM + OBS_DIM), f"Unexpected trajectory shape {traj.shape}"
    assert traj.dtype == torch.float32
    assert list(cond.keys()) == [0], "SequenceDataset conditions on t=0 only"
    assert torch.equal(cond[0], traj[0, ACTION_DIM:]), "Condition is the first normalized observation"

    path_ind, start, _ = dataset.indices[3]
    expected_obs = dataset.normalizer.normalize(episodes[path_ind]["observations"][start:start + 4], "observations")
    assert torch.allclose(traj[:, ACTION_DIM:], expected_obs, atol=1e-6), "Observations should be normalized"
    assert traj.abs().max().item() <= 1 + 1e-5, "limits normalization keeps data in [-1, 1]"
    print(f"✓ Trajectory {tuple(traj.shape)}, condition {tuple(cond[0].shape)}")


def test_goal_dataset_and_collate():
    """GoalDataset conditions on first and last observations; collate stacks by key."""
    print("\n" + "=" * 60)
    print("Test: GoalDataset and collate_batch()")
    print("=" * 60)

    from trajectory_diffuser.datasets import GoalDataset, collate_batch

    dataset = GoalDataset(make_episodes([10, 10]), horizon=4, max_path_length=10, max_n_episodes=5,
                          use_padding=False, normalizer="gaussian")
    traj, cond = dataset[0]
    assert sorted(cond.keys()) == [0, 3], f"Expected keys [0, 3], got {sorted(cond.keys())}"
    assert torch.equal(cond[3], traj[-1, ACTION_DIM:]), "Goal is the last observation of the window"

    trajectories, conditions = collate_batch([dataset[i] for i in range(5)])
    assert trajectories.shape == (5, 4, ACTION_DIM + OBS_DIM)
    assert conditions[0].shape == (5, OBS_DIM) and conditions[3].shape == (5, OBS_DIM)
    print(f"✓ Batch {tuple(trajectories.shape)}, conditions {sorted(conditions)}")


def test_value_dataset():
    """Value targets are discounted returns from the window start to the episode end."""
    print("\n" + "=" * 60)
    print("Test: ValueDataset")
    print("=" * 60)

    from trajectory_diffuser.datasets import ValueDataset, collate_batch

    episodes = make_episodes([6, 9])
    discount = 0.9
    dataset = ValueDataset(episodes, horizon=4, max_path_length=12, max_n_episodes=5, discount=discount)

    for idx in [0, 3, len(dataset) - 1]:
        traj, cond, value = dataset[idx]
        path_ind, start, _ = dataset.indices[idx]
        rewards = episodes[path_ind]["rewards"][start:]
        expected = sum(discount ** k * r for k, r in enumerate(rewards))
        assert value.shape == (1,) and value.dtype == torch.float32
        assert abs(value.item() - expected) < 1e-4, f"Window {idx}: expected {expected}, got {value.item()}"
        assert traj.shape == (4, ACTION_DIM + OBS_DIM) and list(cond.keys()) == [0]
    print(f"✓ Discounted returns match for {len(dataset)} windows")

    trajectories, conditions, values = collate_batch([dataset[i] for i in range(3)])
    assert trajectories.shape == (3, 4, ACTION_DIM + OBS_DIM)
    assert conditions[0].shape == (3, OBS_DIM)
    assert values.shape == (3, 1), f"Values should stack to (B, 1), got {values.shape}"
    print("✓ collate_batch() stacks value targets")

    no_rewards = [{k: v for k, v in ep.items() if k != "rewards"} for ep in episodes]
    try:
        ValueDataset(no_rewards, horizon=4, max_path_length=12, max_n_episodes=5)
    except ValueError as e:
        print(f"✓ Rejected: {e}")
    else:
        raise AssertionError("Episodes without rewards should raise ValueError")


def test_load_episodes_hdf5():
    """traj_N groups load as episodes with observations trimmed to the action count."""
    print("\n" + "=" * 60)
    print("Test: load_episodes_hdf5()")
    print("=" * 60)

    import h5py
    from trajectory_diffuser.datasets import load_episodes_hdf5

    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "trajectory.h5")
        with h5py.File(path, "w") as f:
            for i, length in enumerate([6, 4, 5]):
                group = f.create_group(f"traj_{i}")
                group.create_dataset("obs", data=np.full((length + 1, OBS_DIM), i, dtype=np.float32))
                group.create_dataset("actions", data=np.zeros((length, ACTION_DIM), dtype=np.float32))
                group.create_dataset("rewards", data=np.ones(length, dtype=np.float32))
                group.create_dataset("terminated", data=np.zeros(length, dtype=bool))

        episodes = load_episodes_hdf5(path)
        assert len(episodes) == 3
        assert episodes[0]["observations"].shape == (6, OBS_DIM), "obs trimmed to the action count"
        assert episodes[1]["actions"].shape == (4, ACTION_DIM)
        assert set(episodes[2].keys()) == {"observations", "actions", "rewards", "terminals"}
        assert np.all(episodes[2]["observations"] == 2), "Episodes keep file order"

        subset = load_episodes_hdf5(path, num_traj=2)
        assert len(subset) == 2
    print("✓ Loaded 3 episodes, num_traj respected")


def run_all_tests():
    """Run all dataset tests."""
    print("\n" + "=" * 60)
    print("Trajectory Diffuser Datasets Test Suite")
    print("=" * 60)

    tests = [
        ("ReplayBuffer", test_replay_buffer),
        ("Termination penalty", test_termination_penalty),
        ("make_indices()", test_make_indices),
        ("SequenceDataset item", test_sequence_item),
        ("GoalDataset / collate_batch()", test_goal_dataset_and_collate),
        ("ValueDataset", test_value_dataset),
        ("load_episodes_hdf5()", test_load_episodes_hdf5),
    ]

    passed = 0
    failed = 0

    for name, test_fn in tests:
        try:
            test_fn()
            passed += 1
        except Exception as e:
            print(f"\n✗ FAILED: {name}")
            print(f"  Error: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print("\n" + "=" * 60)
    print(f"Test Results: {passed} passed, {failed} failed")
    print("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    exit(0 if success else 1)
