"""Context-window and trajectory utilities for rolling-context inference.

This module implements the left-padding / masking scheme used when a trajectory
is fed to the sequence model through a fixed-size window, and the
``TrajectoryHistory`` class a caller uses to keep the running trajectory
between ``get_action`` calls (the model itself keeps no state).
"""

from typing import List, NamedTuple, Optional, Tuple

import numpy as np
import torch


class ContextWindow(NamedTuple):
    """A trajectory window of exactly ``max_length`` steps, batch size 1."""
    states: torch.Tensor  # [1, max_length, state_dim]
    actions: torch.Tensor  # [1, max_length, act_dim]
    returns_to_go: torch.Tensor  # [1, max_length, 1]
    timesteps: torch.Tensor  # [1, max_length]
    attention_mask: torch.Tensor  # [1, max_length], 1 for real steps
    pad_len: int


def context_start(seq_len: int, max_length: int) -> int:
    """Index of the first step kept when only the last ``max_length`` steps are used."""
    return max(0, seq_len - max_length)


def build_attention_mask(
    seq_len: int,
    max_length: int,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """Build a left-padding mask of width ``max_length``.

    Real steps occupy the tail of the window, so the mask is
    ``max_length - min(seq_len, max_length)`` zeros followed by ones.

    Args:
        seq_len: Number of steps in the trajectory before truncation
        max_length: Width of the context window

    Returns:
        Long tensor of shape [1, max_length]
    """
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")
    if seq_len < 0:
        raise ValueError(f"seq_len must be >= 0, got {seq_len}")

    n_real = min(seq_len, max_length)
    mask = torch.zeros(1, max_length, dtype=torch.long, device=device)
    mask[:, max_length - n_real:] = 1
    return mask


def left_pad(tensor: torch.Tensor, max_length: int) -> torch.Tensor:
    """Pad dim 1 of ``tensor`` at the front with zeros up to ``max_length``."""
    seq_len = tensor.shape[1]
    if seq_len >= max_length:
        return tensor
    padding = torch.zeros(
        (tensor.shape[0], max_length - seq_len) + tuple(tensor.shape[2:]),
        dtype=tensor.dtype,
        device=tensor.device,
    )
    return torch.cat([padding, tensor], dim=1)


def pad_context_window(
    states: torch.Tensor,
    actions: torch.Tensor,
    returns_to_go: torch.Tensor,
    timesteps: torch.Tensor,
    max_length: int,
) -> ContextWindow:
    """Cut a single-batch trajectory down to a fixed ``max_length`` window.

    Keeps the most recent ``max_length`` steps, left-pads shorter trajectories
    with zero placeholder steps and marks the placeholders with 0 in the mask.

    Args:
        states: [1, seq_len, state_dim]
        actions: [1, seq_len, act_dim]
        returns_to_go: [1, seq_len, 1]
        timesteps: [1, seq_len]
        max_length: Width of the context window

    Returns:
        ContextWindow whose tensors all have sequence length ``max_length``
    """
    if max_length < 1:
        raise ValueError(f"max_length must be >= 1, got {max_length}")

    seq_len = states.shape[1]
    start_idx = context_start(seq_len, max_length)

    states = states[:, start_idx:]
    actions = actions[:, start_idx:]
    returns_to_go = returns_to_go[:, start_idx:]
    timesteps = timesteps[:, start_idx:]

    attention_mask = build_attention_mask(seq_len, max_length, device=states.device)
    pad_len = max_length - states.shape[1]

    return ContextWindow(
        states=left_pad(states, max_length),
        actions=left_pad(actions, max_length),
        returns_to_go=left_pad(returns_to_go, max_length),
        timesteps=left_pad(timesteps, max_length),
        attention_mask=attention_mask,
        pad_len=pad_len,
    )


def discount_cumsum(rewards, gamma: float = 1.0) -> np.ndarray:
    """Compute (discounted) returns-to-go for a reward sequence."""
    rewards = np.asarray(rewards, dtype=np.float64)
    out = np.zeros_like(rewards)
    if len(rewards) == 0:
        return out
    out[-1] = rewards[-1]
    for t in reversed(range(len(rewards) - 1)):
        out[t] = rewards[t] + gamma * out[t + 1]
    return out


class TrajectoryHistory:
    """Running trajectory owned by the caller of ``get_action``.

    Holds every state, action, return-to-go and timestep seen so far in the
    current episode. At decision time there is one more state than there are
    actions; ``as_tensors`` fills the missing action with zeros.
    """

    def __init__(
        self,
        state_dim: int,
        act_dim: int,
        target_return: float,
        return_scale: float = 1.0,
    ):
        if return_scale == 0:
            raise ValueError("return_scale must be non-zero")
        self.state_dim = state_dim
        self.act_dim = act_dim
        self.target_return = target_return
        self.return_scale = return_scale

        self.states: List[np.ndarray] = []
        self.actions: List[np.ndarray] = []
        self.rewards: List[float] = []
        self.returns_to_go: List[float] = []
        self.timesteps: List[int] = []

    def __len__(self) -> int:
        return len(self.states)

    def _as_vector(self, value, width: int, name: str) -> np.ndarray:
        vector = np.asarray(value, dtype=np.float32).reshape(-1)
        if vector.shape[0] != width:
            raise ValueError(f"Expected {name} of dimension {width}, but got {vector.shape[0]}")
        return vector

    def reset(self, initial_state) -> None:
        """Start a new episode from ``initial_state``."""
        self.states = [self._as_vector(initial_state, self.state_dim, "state")]
        self.actions = []
        self.rewards = []
        self.returns_to_go = [float(self.target_return)]
        self.timesteps = [0]

    def record(self, action, reward: float, next_state) -> None:
        """Append the outcome of acting on the latest state."""
        if not self.states:
            raise RuntimeError("reset() must be called before record()")
        self.actions.append(self._as_vector(action, self.act_dim, "action"))
        self.rewards.append(float(reward))
        self.states.append(self._as_vector(next_state, self.state_dim, "state"))
        self.returns_to_go.append(self.returns_to_go[-1] - float(reward) / self.return_scale)
        self.timesteps.append(self.timesteps[-1] + 1)

    def as_tensors(
        self, device="cpu"
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        """Return (states, actions, returns_to_go, timesteps) for the whole episode.

        Shapes are [L, state_dim], [L, act_dim], [L, 1] and [L], where the last
        action row is the zero placeholder for the step about to be decided.
        """
        if not self.states:
            raise RuntimeError("reset() must be called before as_tensors()")
        actions = self.actions + [np.zeros(self.act_dim, dtype=np.float32)]

        states = torch.tensor(np.array(self.states), dtype=torch.float32, device=device)
        actions = torch.tensor(np.array(actions), dtype=torch.float32, device=device)
        returns_to_go = torch.tensor(
            self.returns_to_go, dtype=torch.float32, device=device
        ).reshape(-1, 1)
        timesteps = torch.tensor(self.timesteps, dtype=torch.long, device=device)
        return states, actions, returns_to_go, timesteps
