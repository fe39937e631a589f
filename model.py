"""Return-conditioned sequence model.

This module implements a Decision-Transformer-style model that maps
(state, action, return-to-go, timestep) sequences to per-timestep predictions
of the next state, action and return-to-go. The four modalities are embedded
independently, fused by element-wise summation and layer-normalized before
three independent linear heads read them out.
"""

import logging
from typing import Optional, Tuple

import torch
import torch.nn as nn

from data_utils import pad_context_window

logger = logging.getLogger(__name__)


class DecisionTransformer(nn.Module):
    """Sequence model over (return-to-go, state, action, timestep) trajectories.

    The model owns eight sub-modules: a timestep embedding table, three linear
    embeddings (return, state, action), one layer norm and three linear
    prediction heads (state, action, return). No parameter is shared between
    them and all of them use PyTorch's default initialisation.
    """

    def __init__(
        self,
        state_dim: int,
        act_dim: int,
        hidden_size: int,
        max_ep_len: int = 1000,
        device: Optional[torch.device] = None,
    ):
        """Initialize the sequence model.

        Args:
            state_dim: Dimension of state space
            act_dim: Dimension of action space
            hidden_size: Common width of the embeddings and the layer norm
            max_ep_len: Number of rows of the timestep embedding table
            device: Device the parameters are allocated on
        """
        super().__init__()

        for name, value in (("state_dim", state_dim), ("act_dim", act_dim),
                            ("hidden_size", hidden_size), ("max_ep_len", max_ep_len)):
            if not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer, got {value!r}")

        self.state_dim = state_dim
        self.act_dim = act_dim
        self.hidden_size = hidden_size
        self.max_ep_len = max_ep_len

        # Input embeddings
        self.embed_timestep = nn.Embedding(max_ep_len, hidden_size, device=device)
        self.embed_return = nn.Linear(1, hidden_size, device=device)
        self.embed_state = nn.Linear(state_dim, hidden_size, device=device)
        self.embed_action = nn.Linear(act_dim, hidden_size, device=device)

        self.embed_ln = nn.LayerNorm(hidden_size, device=device)

        # Output heads
        self.predict_state = nn.Linear(hidden_size, state_dim, device=device)
        self.predict_action = nn.Linear(hidden_size, act_dim, device=device)
        self.predict_return = nn.Linear(hidden_size, 1, device=device)

    @classmethod
    def from_config(cls, config, device: Optional[torch.device] = None) -> "DecisionTransformer":
        return cls(
            state_dim=config.state_dim,
            act_dim=config.act_dim,
            hidden_size=config.hidden_size,
            max_ep_len=config.max_ep_len,
            device=device,
        )

    def _check_inputs(
        self,
        states: torch.Tensor,
        actions: torch.Tensor,
        returns_to_go: torch.Tensor,
        timesteps: torch.Tensor,
        attention_mask: Optional[torch.Tensor],
    ) -> None:
        if states.dim() != 3:
            raise ValueError(
                f"states must have shape [batch_size, seq_len, {self.state_dim}], "
                f"got {tuple(states.shape)}"
            )
        batch_size, seq_length = states.shape[0], states.shape[1]

        for name, tensor, width in (
            ("states", states, self.state_dim),
            ("actions", actions, self.act_dim),
            ("returns_to_go", returns_to_go, 1),
        ):
            if tensor.dim() != 3:
                raise ValueError(
                    f"{name} must be rank 3 [batch_size, seq_len, {width}], got {tuple(tensor.shape)}"
                )
            if tuple(tensor.shape[:2]) != (batch_size, seq_length):
                raise ValueError(
                    f"{name} batch/sequence dims {tuple(tensor.shape[:2])} do not match "
                    f"states {(batch_size, seq_length)}"
                )
            if tensor.shape[-1] != width:
                raise ValueError(f"Expected {name} dimension {width}, but got {tensor.shape[-1]}")

        if tuple(timesteps.shape) != (batch_size, seq_length):
            raise ValueError(
                f"timesteps must have shape {(batch_size, seq_length)}, got {tuple(timesteps.shape)}"
            )
        if timesteps.is_floating_point() or timesteps.is_complex() or timesteps.dtype == torch.bool:
            raise TypeError(f"timesteps must be an integer tensor, got {timesteps.dtype}")
        if timesteps.numel() > 0:
            low, high = int(timesteps.min()), int(timesteps.max())
            if low < 0 or high >= self.max_ep_len:
                raise IndexError(
                    f"timesteps must lie in [0, {self.max_ep_len}), got range [{low}, {high}]"
                )

        if attention_mask is not None and tuple(attention_mask.shape) != (batch_size, seq_length):
            raise ValueError(
                f"attention_mask must have shape {(batch_size, seq_length)}, "
                f"got {tuple(attention_mask.shape)}"
            )

    def forward(
        self,
        states: torch.Tensor,  # [batch_size, seq_len, state_dim]
        actions: torch.Tensor,  # [batch_size, seq_len, act_dim]
        returns_to_go: torch.Tensor,  # [batch_size, seq_len, 1]
        timesteps: torch.Tensor,  # [batch_size, seq_len]
        attention_mask: Optional[torch.Tensor] = None,  # [batch_size, seq_len]
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """Forward pass through the model.

        Args:
            states: Batch of state sequences
            actions: Batch of action sequences
            returns_to_go: Batch of return-to-go sequences
            timesteps: Batch of integer timestep sequences, values in [0, max_ep_len)
            attention_mask: Optional padding mask (1 = real step). Shape-checked
                but not applied: the fused embedding has no attention to mask.

        Returns:
            (state_preds, action_preds, return_preds) shaped
            [batch_size, seq_len, state_dim], [batch_size, seq_len, act_dim]
            and [batch_size, seq_len, 1]
        """
        self._check_inputs(states, actions, returns_to_go, timesteps, attention_mask)

        state_embeddings = self.embed_state(states)
        action_embeddings = self.embed_action(actions)
        returns_embeddings = self.embed_return(returns_to_go)
        time_embeddings = self.embed_timestep(timesteps)

        # Modalities are fused by summation, one token per timestep
        stacked_inputs = state_embeddings + time_embeddings + action_embeddings + returns_embeddings
        stacked_inputs = self.embed_ln(stacked_inputs)

        return_preds = self.predict_return(stacked_inputs)
        state_preds = self.predict_state(stacked_inputs)
        action_preds = self.predict_action(stacked_inputs)

        return state_preds, action_preds, return_preds

    def get_action(
        self,
        states: torch.Tensor,  # [seq_len, state_dim]
        actions: torch.Tensor,  # [seq_len, act_dim]
        returns_to_go: torch.Tensor,  # [seq_len, 1]
        timesteps: torch.Tensor,  # [seq_len]
        max_length: Optional[int] = None,
    ) -> torch.Tensor:
        """Predict the next action from the trajectory seen so far.

        When ``max_length`` is set, only the most recent ``max_length`` steps
        are used; shorter trajectories are left-padded with zero steps and a
        mask marking the padding is built. The caller owns the trajectory and
        passes all of it on every call.

        Args:
            states: Every state of the episode so far
            actions: Every action so far, the last row being a placeholder for
                the action being decided
            returns_to_go: Return-to-go at each step
            timesteps: Timestep index of each step
            max_length: Optional context-window cap

        Returns:
            The predicted action at the last step, shape [act_dim]
        """
        seq_len = _sequence_length(states, self.state_dim, "states")
        for name, tensor, width, allow_flat in (
            ("actions", actions, self.act_dim, False),
            ("returns_to_go", returns_to_go, 1, True),
            ("timesteps", timesteps, None, False),
        ):
            length = _sequence_length(tensor, width, name, allow_flat=allow_flat)
            if length != seq_len:
                raise ValueError(f"{name} has {length} steps but states has {seq_len}")
        if seq_len == 0:
            raise ValueError("Cannot predict an action from an empty trajectory")
        if max_length is not None and max_length < 1:
            raise ValueError(f"max_length must be >= 1, got {max_length}")

        states = states.reshape(1, -1, self.state_dim)
        actions = actions.reshape(1, -1, self.act_dim)
        returns_to_go = returns_to_go.reshape(1, -1, 1)
        timesteps = timesteps.reshape(1, -1)

        attention_mask = None
        if max_length is not None:
            window = pad_context_window(states, actions, returns_to_go, timesteps, max_length)
            states, actions, returns_to_go, timesteps = (
                window.states, window.actions, window.returns_to_go, window.timesteps,
            )
            attention_mask = window.attention_mask
            if window.pad_len:
                logger.debug("Left-padded trajectory of %d steps by %d", seq_len, window.pad_len)

        _, action_preds, _ = self.forward(
            states, actions, returns_to_go, timesteps, attention_mask=attention_mask,
        )
        return action_preds[0, -1]


def _sequence_length(tensor: torch.Tensor, width: Optional[int], name: str, allow_flat: bool = False) -> int:
    """Number of steps in a single-trajectory tensor.

    Rows of ``width`` values are accepted as [L, width] or [1, L, width];
    ``width=None`` means one integer per step, [L] or [1, L]. ``allow_flat``
    additionally accepts [L] for one scalar per step.
    """
    shape = tuple(tensor.shape)
    if width is None:
        if len(shape) == 1:
            return shape[0]
        if len(shape) == 2 and shape[0] == 1:
            return shape[1]
        expected = "[seq_len] or [1, seq_len]"
    else:
        if allow_flat and len(shape) == 1:
            return shape[0]
        if len(shape) == 2 and shape[1] == width:
            return shape[0]
        if len(shape) == 3 and shape[0] == 1 and shape[2] == width:
            return shape[1]
        expected = f"[seq_len, {width}] or [1, seq_len, {width}]"
        if allow_flat:
            expected = f"[seq_len], {expected}"
    raise ValueError(f"Expected {name} of shape {expected} for a single trajectory, got {shape}")
