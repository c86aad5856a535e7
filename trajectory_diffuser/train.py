"""
Offline training script for the trajectory diffusion planner.

Loads HDF5 demonstrations, slices them into fixed-horizon windows and trains
a TemporalUnet denoiser inside GaussianDiffusion, keeping an EMA copy. With
--train_value, trains a TemporalValue function on discounted returns instead.

Usage:
    python -m trajectory_diffuser.train \
        --demo_path ~/.maniskill/demos/PickCube-v1/motionplanning/trajectory.state.pd_ee_delta_pos.h5 \
        --horizon 32 \
        --n_diffusion_steps 100
"""

import json
import os
import time
from dataclasses import dataclass
from typing import Literal, Optional, Tuple

import torch
import tyro
from torch.utils.tensorboard import SummaryWriter

from trajectory_diffuser.algorithms.diffuser import DiffusionTrainer, GaussianDiffusion, ValueDiffusion
from trajectory_diffuser.common.networks import TemporalUnet, TemporalValue
from trajectory_diffuser.common.utils import get_device, set_seed
from trajectory_diffuser.datasets import GoalDataset, SequenceDataset, ValueDataset, load_episodes_hdf5


@dataclass
class Args:
    # Experiment settings
    exp_name: Optional[str] = None
    """the name of this experiment"""
    seed: int = 1
    """seed of the experiment"""
    cuda: bool = True
    """if toggled, cuda will be enabled by default"""

    # Dataset settings
    demo_path: str = "demos/trajectory.state.h5"
    """path to the HDF5 demonstration file"""
    num_demos: Optional[int] = None
    """number of trajectories to load (None for all)"""
    goal_conditioned: bool = False
    """if toggled, condition on the last observation of each window as well as the first"""
    horizon: int = 32
    """planning horizon (trajectory window length)"""
    max_path_length: int = 1000
    """episodes are padded to this length"""
    max_n_episodes: int = 10000
    """replay buffer capacity in episodes"""
    termination_penalty: float = 0.0
    """reward penalty added to terminal transitions"""
    use_padding: bool = True
    """allow windows that run past the end of an episode"""
    normalizer: Literal["limits", "gaussian", "safe_limits"] = "limits"
    """normalizer used for observations and actions"""
    train_value: bool = False
    """if toggled, train a TemporalValue function on discounted returns instead of the diffuser"""
    discount: float = 0.99
    """reward discount for the value targets"""
    value_loss_type: Literal["value_l1", "value_l2"] = "value_l2"
    """loss of the value function"""

    # Model settings
    dim: int = 32
    """base channel width of the U-Net"""
    dim_mults: Tuple[int, ...] = (1, 2, 4, 8)
    """channel multipliers per U-Net level"""
    n_diffusion_steps: int = 1000
    """number of diffusion steps"""
    loss_type: Literal["l1", "l2"] = "l1"
    """elementwise training loss"""
    clip_denoised: bool = False
    """clip the reconstructed trajectory to [-1, 1] while sampling"""
    predict_epsilon: bool = True
    """predict injected noise (True) or the clean trajectory (False)"""
    action_weight: float = 1.0
    """loss weight of the first action"""
    loss_discount: float = 1.0
    """per-timestep loss discount"""

    # Training settings
    n_train_steps: int = 100_000
    """number of optimizer steps"""
    train_batch_size: int = 32
    """batch size"""
    train_lr: float = 2e-5
    """learning rate"""
    gradient_accumulate_every: int = 2
    """micro-batches per optimizer step"""
    ema_decay: float = 0.995
    """EMA decay rate"""
    step_start_ema: int = 2000
    """steps before the EMA starts averaging"""
    update_ema_every: int = 10
    """steps between EMA updates"""
    log_freq: int = 100
    """steps between logging"""
    save_freq: int = 1000
    """steps between checkpoints"""
    num_dataload_workers: int = 0
    """number of DataLoader workers"""


def main():
    args = tyro.cli(Args)

    if args.exp_name is None:
        prefix = "value" if args.train_value else "diffuser"
        args.exp_name = f"{prefix}-h{args.horizon}-seed{args.seed}"

    run_name = f"{args.exp_name}__{int(time.time())}"

    log_dir = f"runs/{run_name}"
    os.makedirs(log_dir, exist_ok=True)

    with open(f"{log_dir}/config.json", "w") as f:
        json.dump(vars(args), f, indent=2)

    writer = SummaryWriter(log_dir)
    writer.add_text(
        "hyperparameters",
        "|param|value|\n|-|-|\n%s" % (
            "\n".join([f"|{key}|{value}|" for key, value in vars(args).items()])
        ),
    )

    set_seed(args.seed)
    device = get_device("cuda" if args.cuda and torch.cuda.is_available() else "cpu")
    print(f"[ training ] Using device: {device}")

    # Dataset
    episodes = load_episodes_hdf5(args.demo_path, num_traj=args.num_demos)
    dataset_kwargs = dict(
        horizon=args.horizon,
        max_path_length=args.max_path_length,
        max_n_episodes=args.max_n_episodes,
        termination_penalty=args.termination_penalty,
        use_padding=args.use_padding,
        normalizer=args.normalizer,
    )
    if args.train_value:
        dataset = ValueDataset(episodes, discount=args.discount, **dataset_kwargs)
    elif args.goal_conditioned:
        dataset = GoalDataset(episodes, **dataset_kwargs)
    else:
        dataset = SequenceDataset(episodes, **dataset_kwargs)
    observation_dim = dataset.observation_dim
    action_dim = dataset.action_dim
    print(f"[ datasets ] {len(dataset)} windows | observation_dim: {observation_dim} | action_dim: {action_dim}")

    # Model
    generator = torch.Generator(device=device).manual_seed(args.seed)
    if args.train_value:
        model = TemporalValue(
            horizon=args.horizon,
            transition_dim=observation_dim + action_dim,
            cond_dim=observation_dim,
            dim=args.dim,
            dim_mults=args.dim_mults,
        )
        diffusion = ValueDiffusion(
            model,
            horizon=args.horizon,
            observation_dim=observation_dim,
            action_dim=action_dim,
            n_timesteps=args.n_diffusion_steps,
            loss_type=args.value_loss_type,
            generator=generator,
        ).to(device)
    else:
        model = TemporalUnet(
            horizon=args.horizon,
            transition_dim=observation_dim + action_dim,
            cond_dim=observation_dim,
            dim=args.dim,
            dim_mults=args.dim_mults,
        )
        diffusion = GaussianDiffusion(
            model,
            horizon=args.horizon,
            observation_dim=observation_dim,
            action_dim=action_dim,
            n_timesteps=args.n_diffusion_steps,
            loss_type=args.loss_type,
            clip_denoised=args.clip_denoised,
            predict_epsilon=args.predict_epsilon,
            action_weight=args.action_weight,
            loss_discount=args.loss_discount,
            generator=generator,
        ).to(device)

    trainer = DiffusionTrainer(
        diffusion,
        dataset,
        ema_decay=args.ema_decay,
        train_batch_size=args.train_batch_size,
        train_lr=args.train_lr,
        gradient_accumulate_every=args.gradient_accumulate_every,
        step_start_ema=args.step_start_ema,
        update_ema_every=args.update_ema_every,
        log_freq=args.log_freq,
        save_freq=args.save_freq,
        results_folder=f"{log_dir}/checkpoints",
        device=device,
        writer=writer,
        num_workers=args.num_dataload_workers,
    )

    trainer.train(args.n_train_steps)
    trainer.save(trainer.step)
    # Reload with DatasetNormalizer.from_state_dict(torch.load(path))
    torch.save(dataset.normalizer.state_dict(), f"{log_dir}/normalizer.pt")

    writer.close()
    print(f"[ training ] Done. Results in {log_dir}")


if __name__ == "__main__":
    main()
