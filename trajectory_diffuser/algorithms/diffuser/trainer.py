"""
Diffusion Trainer

Training utilities for GaussianDiffusion and ValueDiffusion including:
- Infinite DataLoader iteration
- Gradient accumulation
- EMA shadow model
- Checkpointing and TensorBoard logging
"""

import copy
import math
import os
from typing import Dict, Iterator, Optional

import torch
from diffusers.training_utils import EMAModel
from torch.utils.data import DataLoader, Dataset
from torch.utils.tensorboard import SummaryWriter
from tqdm import tqdm

from .diffusion import GaussianDiffusion
from ...datasets.sequence import collate_batch


def cycle(dl: DataLoader) -> Iterator:
    while True:
        for data in dl:
            yield data


def batch_to_device(batch, device):
    trajectories, conditions, *targets = batch
    return (
        trajectories.to(device),
        {t: val.to(device) for t, val in conditions.items()},
        *[target.to(device) for target in targets],
    )


class DiffusionTrainer:
    """Trainer for GaussianDiffusion.

    The EMA model is a deep copy of the diffusion model made at construction.
    Its shadow weights follow ``shadow = shadow * decay + live * (1 - decay)``
    every ``update_ema_every`` steps, and are reset to the live weights until
    ``step_start_ema`` steps have been taken.

    Args:
        diffusion_model: GaussianDiffusion (or ValueDiffusion) to train
        dataset: Dataset yielding (trajectory, conditions) pairs, plus a value
            target per item when training a ValueDiffusion
        ema_decay: EMA decay rate
        train_batch_size: Batch size per micro-batch
        train_lr: Adam learning rate
        gradient_accumulate_every: Micro-batches per optimizer step
        step_start_ema: Steps before the EMA starts averaging
        update_ema_every: Steps between EMA updates
        log_freq: Steps between logging
        save_freq: Steps between checkpoints
        results_folder: Checkpoint directory
        device: Training device
        writer: Optional TensorBoard SummaryWriter
        num_workers: DataLoader workers
    """

    def __init__(
        self,
        diffusion_model: GaussianDiffusion,
        dataset: Dataset,
        ema_decay: float = 0.995,
        train_batch_size: int = 32,
        train_lr: float = 2e-5,
        gradient_accumulate_every: int = 2,
        step_start_ema: int = 2000,
        update_ema_every: int = 10,
        log_freq: int = 100,
        save_freq: int = 1000,
        results_folder: str = "./results",
        device: Optional[torch.device] = None,
        writer: Optional[SummaryWriter] = None,
        num_workers: int = 0,
    ):
        self.device = device if device is not None else diffusion_model.device
        self.model = diffusion_model.to(self.device)

        # The random source is shared, not duplicated
        generator = diffusion_model.generator
        self.ema_model = copy.deepcopy(self.model, memo={id(generator): generator})
        self.ema_model.requires_grad_(False)
        # decay == min_decay pins every update to exactly `ema_decay`;
        # update_after_step=-1 keeps the first update from being a plain copy
        self.ema = EMAModel(
            parameters=self.model.parameters(),
            decay=ema_decay,
            min_decay=ema_decay,
            update_after_step=-1,
        )

        self.update_ema_every = update_ema_every
        self.step_start_ema = step_start_ema
        self.log_freq = log_freq
        self.save_freq = save_freq

        self.batch_size = train_batch_size
        self.gradient_accumulate_every = gradient_accumulate_every

        self.dataset = dataset
        self.dataloader = cycle(DataLoader(
            self.dataset,
            batch_size=train_batch_size,
            shuffle=True,
            num_workers=num_workers,
            pin_memory=self.device.type == "cuda",
            collate_fn=collate_batch,
            drop_last=False,
        ))
        self.optimizer = torch.optim.Adam(diffusion_model.parameters(), lr=train_lr)

        self.results_folder = results_folder
        self.writer = writer

        # Tracking
        self.step = 0
        self.nan_loss_count = 0

        self.reset_parameters()

    # ==================== EMA ====================

    def reset_parameters(self):
        """Set the shadow (and the EMA model) to the live weights."""
        for s_param, param in zip(self.ema.shadow_params, self.model.parameters()):
            s_param.data.copy_(param.data)
        self.ema.copy_to(self.ema_model.parameters())

    def step_ema(self):
        if self.step < self.step_start_ema:
            self.reset_parameters()
            return
        self.ema.step(self.model.parameters())
        self.ema.copy_to(self.ema_model.parameters())

    # ==================== Training ====================

    def train(self, n_train_steps: int) -> Dict[str, list]:
        """Run ``n_train_steps`` optimizer steps.

        Returns:
            Dictionary of training history
        """
        history = {
            "step": [],
            "loss": [],
        }

        self.model.train()
        pbar = tqdm(range(n_train_steps), desc="[ training ]")
        for _ in pbar:
            total_loss = 0.
            infos = {}
            for _ in range(self.gradient_accumulate_every):
                batch = batch_to_device(next(self.dataloader), self.device)
                result = self.model.loss(*batch)
                loss = result.loss / self.gradient_accumulate_every
                loss.backward()
                total_loss += loss.item()
                infos = result.info

            if not math.isfinite(total_loss):
                self.nan_loss_count += 1
                print(f"[ training ] Warning: non-finite loss {total_loss} at step {self.step}")

            self.optimizer.step()
            self.optimizer.zero_grad()

            if self.step % self.update_ema_every == 0:
                self.step_ema()

            if self.save_freq and self.step % self.save_freq == 0:
                self.save(self.step)

            if self.step % self.log_freq == 0:
                info = {key: val.item() for key, val in infos.items()}
                history["step"].append(self.step)
                history["loss"].append(total_loss)
                for key, val in info.items():
                    history.setdefault(key, []).append(val)
                pbar.set_postfix({"loss": f"{total_loss:.4f}", **{k: f"{v:.4f}" for k, v in info.items()}})
                if self.writer is not None:
                    self.writer.add_scalar("losses/loss", total_loss, self.step)
                    for key, val in info.items():
                        self.writer.add_scalar(f"losses/{key}", val, self.step)
                    self.writer.add_scalar("losses/nan_loss", self.nan_loss_count, self.step)
                    self.writer.add_scalar(
                        "charts/learning_rate", self.optimizer.param_groups[0]["lr"], self.step
                    )

            self.step += 1

        return history

    # ==================== Checkpointing ====================

    def save(self, step: int) -> str:
        """Save live and EMA weights to ``results_folder/state_{step}.pt``."""
        os.makedirs(self.results_folder, exist_ok=True)
        savepath = os.path.join(self.results_folder, f"state_{step}.pt")
        torch.save(
            {
                "step": self.step,
                "model": self.model.state_dict(),
                "ema": self.ema_model.state_dict(),
            },
            savepath,
        )
        print(f"[ training ] Saved model to {savepath}")
        return savepath

    def load(self, step: int):
        loadpath = os.path.join(self.results_folder, f"state_{step}.pt")
        data = torch.load(loadpath, map_location=self.device)

        self.step = data["step"]
        self.model.load_state_dict(data["model"])
        self.ema_model.load_state_dict(data["ema"])
        for s_param, param in zip(self.ema.shadow_params, self.ema_model.parameters()):
            s_param.data.copy_(param.data)
        print(f"[ training ] Loaded model from {loadpath}")
