"""
Trajectory Diffuser: planning with diffusion models over state/action
trajectories.

Components:
1. Cosine noise schedule and Gaussian diffusion (forward noising, reverse sampling)
2. Temporal U-Net denoiser
3. Observation conditioning by masking
4. Weighted L1/L2 trajectory losses
5. Trainer with EMA, datasets, normalizers and a planning policy
"""

__version__ = "0.1.0"
