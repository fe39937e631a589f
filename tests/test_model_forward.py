"""Tests for model forward pass and rolling-context action selection."""

import pytest
import torch
import sys
import os

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
from model import DecisionTransformer


@pytest.fixture
def model():
    """Create a small model for testing."""
    torch.manual_seed(0)
    return DecisionTransformer(
        state_dim=4,
        act_dim=2,
        hidden_size=8,
        max_ep_len=100,
    )


@pytest.fixture
def batch():
    """Create a small batch of data for testing."""
    # Set random seed for reproducible test data
    torch.manual_seed(42)

    return {
        "states": torch.randn(3, 6, 4),  # [batch_size, seq_len, state_dim]
        "actions": torch.randn(3, 6, 2),  # [batch_size, seq_len, act_dim]
        "returns": torch.randn(3, 6, 1),  # [batch_size, seq_len, 1]
        "timesteps": torch.arange(6).expand(3, -1),  # [batch_size, seq_len]
    }


def trajectory(length, state_dim=4, act_dim=2):
    """Single unbatched trajectory whose timesteps are 0..length-1."""
    torch.manual_seed(7)
    return (
        torch.randn(length, state_dim),
        torch.randn(length, act_dim),
        torch.randn(length, 1),
        torch.arange(length),
    )


@pytest.fixture
def forward_spy(model, monkeypatch):
    """Record the inputs get_action hands to forward."""
    calls = []
    original_forward = model.forward

    def spy(states, actions, returns_to_go, timesteps, attention_mask=None):
        calls.append({
            "states": states,
            "actions": actions,
            "returns_to_go": returns_to_go,
            "timesteps": timesteps,
            "attention_mask": attention_mask,
        })
        return original_forward(states, actions, returns_to_go, timesteps, attention_mask=attention_mask)

    monkeypatch.setattr(model, "forward", spy)
    return calls


def test_forward_pass(model, batch):
    """Test model forward pass shapes."""
    state_preds, action_preds, return_preds = model(
        states=batch["states"],
        actions=batch["actions"],
        returns_to_go=batch["returns"],
        timesteps=batch["timesteps"],
    )

    assert state_preds.shape == (3, 6, 4)
    assert action_preds.shape == (3, 6, 2)
    assert return_preds.shape == (3, 6, 1)
    assert not torch.isnan(action_preds).any()


def test_forward_is_deterministic(model, batch):
    model.eval()
    first = model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"])
    second = model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"])

    for a, b in zip(first, second):
        assert torch.equal(a, b)


def test_attention_mask_does_not_change_predictions(model, batch):
    """The fused-embedding model has no attention, so the mask is accepted but unused."""
    mask = torch.ones(3, 6)
    mask[:, :2] = 0

    _, with_mask, _ = model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"],
                            attention_mask=mask)
    _, without_mask, _ = model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"])

    assert torch.equal(with_mask, without_mask)


def test_predictions_are_per_timestep(model, batch):
    """Each position only sees its own step: changing step 0 leaves later predictions alone."""
    states = batch["states"].clone()
    states[:, 0] += 10.0

    _, base, _ = model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"])
    _, changed, _ = model(states, batch["actions"], batch["returns"], batch["timesteps"])

    assert not torch.allclose(base[:, 0], changed[:, 0])
    assert torch.allclose(base[:, 1:], changed[:, 1:])


def test_backward_reaches_every_parameter(model, batch):
    state_preds, action_preds, return_preds = model(
        batch["states"], batch["actions"], batch["returns"], batch["timesteps"],
    )
    loss = state_preds.pow(2).mean() + action_preds.pow(2).mean() + return_preds.pow(2).mean()
    loss.backward()

    for name, param in model.named_parameters():
        assert param.grad is not None, name


def test_model_parameters(model):
    """Test that the eight sub-modules exist with the right shapes."""
    children = dict(model.named_children())
    assert set(children) == {
        "embed_timestep", "embed_return", "embed_state", "embed_action",
        "embed_ln", "predict_state", "predict_action", "predict_return",
    }

    for name, param in model.named_parameters():
        assert param.requires_grad
        assert not torch.isnan(param).any()

    assert model.embed_timestep.weight.shape == (100, 8)  # [max_ep_len, hidden_size]
    assert model.embed_return.weight.shape == (8, 1)  # [hidden_size, 1]
    assert model.embed_state.weight.shape == (8, 4)  # [hidden_size, state_dim]
    assert model.embed_action.weight.shape == (8, 2)  # [hidden_size, act_dim]
    assert model.embed_ln.normalized_shape == (8,)
    assert model.predict_state.weight.shape == (4, 8)
    assert model.predict_action.weight.shape == (2, 8)
    assert model.predict_return.weight.shape == (1, 8)


@pytest.mark.parametrize("kwargs", [
    {"state_dim": 0},
    {"act_dim": -1},
    {"hidden_size": 0},
    {"max_ep_len": 0},
])
def test_invalid_construction(kwargs):
    params = {"state_dim": 4, "act_dim": 2, "hidden_size": 8, "max_ep_len": 100}
    params.update(kwargs)
    with pytest.raises(ValueError):
        DecisionTransformer(**params)


def test_forward_rejects_wrong_state_dim(model, batch):
    with pytest.raises(ValueError, match="states dimension 4"):
        model(torch.randn(3, 6, 5), batch["actions"], batch["returns"], batch["timesteps"])


def test_forward_rejects_mismatched_sequence_lengths(model, batch):
    with pytest.raises(ValueError, match="actions"):
        model(batch["states"], batch["actions"][:, :5], batch["returns"], batch["timesteps"])


def test_forward_rejects_unbatched_input(model, batch):
    with pytest.raises(ValueError, match="rank 3|shape"):
        model(batch["states"][0], batch["actions"], batch["returns"], batch["timesteps"])


def test_forward_rejects_float_timesteps(model, batch):
    with pytest.raises(TypeError):
        model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"].float())


def test_forward_rejects_out_of_range_timesteps(model, batch):
    timesteps = batch["timesteps"].clone()
    timesteps[0, -1] = 100
    with pytest.raises(IndexError):
        model(batch["states"], batch["actions"], batch["returns"], timesteps)


def test_forward_rejects_wrong_mask_shape(model, batch):
    with pytest.raises(ValueError, match="attention_mask"):
        model(batch["states"], batch["actions"], batch["returns"], batch["timesteps"],
              attention_mask=torch.ones(3, 5))


def test_get_action_truncates_long_trajectory(model, forward_spy):
    """5-step trajectory with max_length=3 keeps steps 2, 3, 4 and masks nothing."""
    states, actions, returns, timesteps = trajectory(5)

    action = model.get_action(states, actions, returns, timesteps, max_length=3)

    assert action.shape == (2,)
    call = forward_spy[-1]
    assert call["timesteps"].tolist() == [[2, 3, 4]]
    assert torch.equal(call["states"][0], states[2:])
    assert call["attention_mask"].tolist() == [[1, 1, 1]]


def test_get_action_left_pads_short_trajectory(model, forward_spy):
    """2-step trajectory with max_length=3 gets one zero step in front."""
    states, actions, returns, timesteps = trajectory(2)

    action = model.get_action(states, actions, returns, timesteps, max_length=3)

    assert action.shape == (2,)
    call = forward_spy[-1]
    assert call["states"].shape == (1, 3, 4)
    assert torch.all(call["states"][0, 0] == 0)
    assert torch.all(call["actions"][0, 0] == 0)
    assert call["returns_to_go"][0, 0, 0] == 0
    assert torch.equal(call["states"][0, 1:], states)
    assert call["timesteps"].tolist() == [[0, 0, 1]]
    assert call["attention_mask"].tolist() == [[0, 1, 1]]


def test_get_action_exact_window(model, forward_spy):
    states, actions, returns, timesteps = trajectory(3)

    model.get_action(states, actions, returns, timesteps, max_length=3)

    assert forward_spy[-1]["attention_mask"].tolist() == [[1, 1, 1]]
    assert forward_spy[-1]["timesteps"].tolist() == [[0, 1, 2]]


def test_get_action_without_window_uses_full_trajectory(model, forward_spy):
    states, actions, returns, timesteps = trajectory(7)

    action = model.get_action(states, actions, returns, timesteps)

    assert action.shape == (2,)
    call = forward_spy[-1]
    assert call["states"].shape == (1, 7, 4)
    assert call["attention_mask"] is None


def test_get_action_returns_last_prediction(model):
    states, actions, returns, timesteps = trajectory(5)

    action = model.get_action(states, actions, returns, timesteps, max_length=3)
    _, action_preds, _ = model(
        states[2:].unsqueeze(0), actions[2:].unsqueeze(0), returns[2:].unsqueeze(0),
        timesteps[2:].unsqueeze(0),
    )

    assert torch.allclose(action, action_preds[0, -1])


def test_get_action_accepts_batched_single_trajectory(model):
    states, actions, returns, timesteps = trajectory(4)

    flat = model.get_action(states, actions, returns, timesteps, max_length=3)
    batched = model.get_action(
        states.unsqueeze(0), actions.unsqueeze(0), returns.unsqueeze(0), timesteps.unsqueeze(0),
        max_length=3,
    )

    assert torch.equal(flat, batched)


def test_get_action_rejects_mismatched_lengths(model):
    states, actions, returns, timesteps = trajectory(4)

    with pytest.raises(ValueError, match="timesteps has 3 steps"):
        model.get_action(states, actions, returns, timesteps[:3], max_length=3)
    with pytest.raises(ValueError, match="actions has 5 steps"):
        model.get_action(states, torch.randn(5, 2), returns, timesteps)


def test_get_action_rejects_multiple_trajectories(model):
    """A batch of two 3-step trajectories must not be flattened into one 6-step trajectory."""
    with pytest.raises(ValueError, match="single trajectory"):
        model.get_action(
            torch.randn(2, 3, 4), torch.randn(2, 3, 2), torch.randn(2, 3, 1),
            torch.arange(3).expand(2, -1), max_length=10,
        )


def test_get_action_rejects_transposed_returns(model):
    states, actions, returns, timesteps = trajectory(3)

    with pytest.raises(ValueError, match="returns_to_go"):
        model.get_action(states, actions, returns.reshape(1, 3), timesteps)


def test_get_action_rejects_batched_timesteps(model):
    states, actions, returns, timesteps = trajectory(3)

    with pytest.raises(ValueError, match="timesteps"):
        model.get_action(states, actions, returns, timesteps.reshape(3, 1))


def test_get_action_accepts_flat_returns(model):
    states, actions, returns, timesteps = trajectory(3)

    flat = model.get_action(states, actions, returns.reshape(-1), timesteps)
    column = model.get_action(states, actions, returns, timesteps)

    assert torch.equal(flat, column)


def test_get_action_rejects_empty_trajectory(model):
    with pytest.raises(ValueError, match="empty trajectory"):
        model.get_action(
            torch.zeros(0, 4), torch.zeros(0, 2), torch.zeros(0, 1),
            torch.zeros(0, dtype=torch.long), max_length=3,
        )


def test_get_action_rejects_bad_window(model):
    states, actions, returns, timesteps = trajectory(4)

    with pytest.raises(ValueError, match="max_length"):
        model.get_action(states, actions, returns, timesteps, max_length=0)
