"""Diffuser: trajectory-level diffusion planning.

- GaussianDiffusion: forward/reverse processes and the training loss
- ValueDiffusion: value function trained on noised trajectories
- DiffusionTrainer: optimization loop with an EMA copy of the model
- Policy: plans from observations and returns the first action
"""

from .diffusion import GaussianDiffusion, ValueDiffusion
from .policy import Policy, Trajectories
from .trainer import DiffusionTrainer

__all__ = ["GaussianDiffusion", "ValueDiffusion", "Policy", "Trajectories", "DiffusionTrainer"]
