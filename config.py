"""Configuration for the return-conditioned sequence model and its rollouts.

This module defines the parameters for the sequence model, the rolling-context
inference window, the environment rollouts driven by ``rollout.py`` and the
generic encoder wrapper.
"""

from dataclasses import dataclass, fields
from typing import Optional

import torch
import yaml


@dataclass
class Config:
    """Configuration for the sequence model, inference window and rollouts.

    Attributes:
        state_dim: Dimension of state space
        act_dim: Dimension of action space
        hidden_size: Common width of the four embeddings and the layer norm
        max_ep_len: Rows of the timestep embedding table (timesteps must be < this)
        max_length: Context window used by get_action (None disables truncation)
        target_return: Return-to-go the first step of an episode is conditioned on
        return_scale: Rewards are divided by this before being subtracted from the return-to-go
        episodes: Number of rollout episodes
        max_steps: Safety cap on steps per episode
        env: Gymnasium environment id
        encoder_layers: Number of encoder layers
        encoder_heads: Number of attention heads per encoder layer
        encoder_d_model: Encoder embedding width
        encoder_dim_feedforward: Encoder feed-forward width
        encoder_dropout: Encoder dropout probability
        device: 'cpu', 'cuda' or 'auto'
        seed: Random seed for reproducibility
        log_level: Root logging level
    """
    # Sequence model
    state_dim: int = 4
    act_dim: int = 2
    hidden_size: int = 128
    max_ep_len: int = 1000

    # Rolling context
    max_length: Optional[int] = 20

    # Rollout settings
    target_return: float = 1.0
    return_scale: float = 1.0
    episodes: int = 5
    max_steps: int = 200
    env: str = "Pendulum-v1"

    # Encoder wrapper
    encoder_layers: int = 4
    encoder_heads: int = 8
    encoder_d_model: int = 64
    encoder_dim_feedforward: int = 256
    encoder_dropout: float = 0.1

    seed: int = 42
    device: str = "cpu"
    log_level: str = "INFO"

    @classmethod
    def from_yaml(cls, yaml_path: str) -> "Config":
        """Load configuration from a YAML file.

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with values from YAML
        """
        with open(yaml_path, "r") as f:
            config_dict = yaml.safe_load(f) or {}

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(config_dict) - known)
        if unknown:
            raise ValueError(f"Unknown config keys in {yaml_path}: {', '.join(unknown)}")

        # YAML reads values like 3e-4 as strings
        annotations = cls.__annotations__
        for key, value in config_dict.items():
            if value is None or not isinstance(value, str):
                continue
            expected_type = annotations[key]
            if expected_type in (float, Optional[float]):
                config_dict[key] = float(value)
            elif expected_type in (int, Optional[int]):
                config_dict[key] = int(value)

        return cls(**config_dict)

    def to_yaml(self, yaml_path: str) -> None:
        """Save configuration to a YAML file.

        Args:
            yaml_path: Path to save YAML configuration file
        """
        config_dict = {
            k: v for k, v in self.__dict__.items()
            if not k.startswith("_")
        }
        with open(yaml_path, "w") as f:
            yaml.dump(config_dict, f, default_flow_style=False)

    def validate(self) -> "Config":
        """Check dimension and range constraints, raising ValueError on the first violation."""
        for name in ("state_dim", "act_dim", "hidden_size", "max_ep_len",
                     "encoder_layers", "encoder_heads", "encoder_d_model",
                     "encoder_dim_feedforward", "episodes", "max_steps"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        if self.max_length is not None and (not isinstance(self.max_length, int) or self.max_length < 1):
            raise ValueError(f"max_length must be a positive integer or None, got {self.max_length!r}")
        if self.return_scale == 0:
            raise ValueError("return_scale must be non-zero")
        if self.encoder_d_model % self.encoder_heads != 0:
            raise ValueError(
                f"encoder_d_model ({self.encoder_d_model}) must be divisible by "
                f"encoder_heads ({self.encoder_heads})"
            )
        if not 0.0 <= self.encoder_dropout < 1.0:
            raise ValueError(f"encoder_dropout must be in [0, 1), got {self.encoder_dropout}")
        return self


def get_device(name: str = "auto") -> torch.device:
    """Resolve a device name, with 'auto' picking CUDA when it is available."""
    if name == "auto":
        return torch.device("cuda" if torch.cuda.is_available() else "cpu")
    return torch.device(name)
