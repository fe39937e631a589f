#!/usr/bin/env python
"""
rollout.py

Drive a gymnasium environment with the sequence model through rolling-context
inference: every step the whole episode so far is handed to ``get_action``,
which keeps only the last ``max_length`` steps.

Usage
-----
python rollout.py \
    --config  rollout.yaml     # optional, defaults from config.Config
    --env     Pendulum-v1      # optional
    --episodes 10              # optional
    --max_length 20            # optional, 0 disables the context window

Then
-----
tensorboard --logdir runs
"""
import argparse
import collections
import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path

import gymnasium as gym
import numpy as np
import torch
import yaml
from torch.utils.tensorboard import SummaryWriter
from tqdm import tqdm

from config import Config, get_device
from data_utils import TrajectoryHistory, discount_cumsum
from encoder import TransformerEncoderWrapper
from model import DecisionTransformer

logger = logging.getLogger(__name__)


# ─────────────────────── tiny helpers ────────────────────────────
def setup_logging(level="INFO", log_file_path=None):
    """Configure the root logger, optionally mirroring it to a file."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in root_logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(formatter)
        root_logger.addHandler(stream_handler)

    if log_file_path is not None:
        # Remove existing file handlers to avoid duplicate logging
        close_file_handlers()
        file_handler = logging.FileHandler(log_file_path, mode="w")
        file_handler.setLevel(root_logger.level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logger.info("Logging recorded to: %s", log_file_path)


def close_file_handlers():
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if isinstance(handler, logging.FileHandler):
            root_logger.removeHandler(handler)
            handler.close()


@contextmanager
def error_handler():
    """Turn configuration and input errors into a clean exit."""
    try:
        yield
    except FileNotFoundError as e:
        print(f"Error: Could not find file - {e}", file=sys.stderr)
        sys.exit(1)
    except yaml.YAMLError as e:
        print(f"Error: Invalid YAML configuration - {e}", file=sys.stderr)
        sys.exit(1)
    except (ValueError, TypeError, IndexError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def tb_writer(root="runs"):
    logdir = Path(root) / time.strftime("%Y%m%d-%H%M%S")
    logdir.mkdir(parents=True, exist_ok=True)
    return SummaryWriter(str(logdir)), logdir


def clip_action(env, action):
    space = getattr(env, "action_space", None)
    low, high = getattr(space, "low", None), getattr(space, "high", None)
    if low is None or high is None:
        return action
    return np.clip(action, low, high)


# ─────────────────── rollout loop ─────────────────────────────
def run_episode(model, env, config, writer=None, global_step=0):
    """Run one episode with rolling-context action selection.

    Returns:
        Tuple of (episode_return, episode_length, episode_data, global_step)
    """
    device = next(model.parameters()).device
    history = TrajectoryHistory(
        state_dim=model.state_dim,
        act_dim=model.act_dim,
        target_return=config.target_return,
        return_scale=config.return_scale,
    )

    state, _ = env.reset()
    history.reset(state)

    episode_return, episode_length = 0.0, 0
    episode_data = collections.defaultdict(list)
    max_steps = min(config.max_steps, model.max_ep_len)

    model.eval()
    for _ in range(max_steps):
        states, actions, returns_to_go, timesteps = history.as_tensors(device)
        with torch.no_grad():
            action = model.get_action(
                states, actions, returns_to_go, timesteps, max_length=config.max_length,
            )
        action = clip_action(env, action.cpu().numpy())

        prev_state = state
        state, reward, terminated, truncated, _ = env.step(action)
        history.record(action, reward, state)

        episode_return += float(reward)
        episode_length += 1
        episode_data["observations"].append(np.asarray(prev_state, dtype=np.float32).reshape(-1))
        episode_data["actions"].append(np.asarray(action, dtype=np.float32).reshape(-1))
        episode_data["rewards"].append(float(reward))

        if writer is not None:
            writer.add_scalar("reward/step", float(reward), global_step)
            writer.add_scalar("action/norm", float(np.linalg.norm(action)), global_step)
        global_step += 1

        if terminated or truncated:
            break

    for key in list(episode_data):
        episode_data[key] = np.array(episode_data[key])
    episode_data["rtg"] = discount_cumsum(episode_data["rewards"])

    return episode_return, episode_length, dict(episode_data), global_step


def evaluate(model, env, config, writer=None):
    returns, lengths = [], []
    global_step = 0

    for episode in tqdm(range(config.episodes), desc="Episodes"):
        episode_return, episode_length, _, global_step = run_episode(
            model, env, config, writer=writer, global_step=global_step,
        )
        logger.info("Episode %d: return %.3f over %d steps", episode, episode_return, episode_length)
        if writer is not None:
            writer.add_scalar("reward/episode", episode_return, episode)
            writer.add_scalar("steps/episode", episode_length, episode)
        returns.append(episode_return)
        lengths.append(episode_length)

    return returns, lengths


def make_env(env_id):
    return gym.make(env_id)


# ────────────────────────── main ────────────────────────────────
def main(argv=None):
    ap = argparse.ArgumentParser(description="Roll out the sequence model in a gymnasium environment")
    ap.add_argument("--config", type=str, help="Path to config YAML file")
    ap.add_argument("--env", type=str, help="Override env in config")
    ap.add_argument("--episodes", type=int, help="Override episodes in config")
    ap.add_argument("--max_steps", type=int, help="safety cap per episode")
    ap.add_argument("--max_length", type=int, help="context window, 0 disables it")
    ap.add_argument("--logdir", type=str, default="runs", help="TensorBoard root directory")
    ap.add_argument("--encoder_smoke_test", action="store_true",
                    help="only push a random batch through the encoder wrapper")
    args = ap.parse_args(argv)

    with error_handler():
        config = Config.from_yaml(args.config) if args.config else Config()
        if args.env is not None:
            config.env = args.env
        if args.episodes is not None:
            config.episodes = args.episodes
        if args.max_steps is not None:
            config.max_steps = args.max_steps
        if args.max_length is not None:
            config.max_length = args.max_length or None

        setup_logging(config.log_level)
        torch.manual_seed(config.seed)
        np.random.seed(config.seed)
        device = get_device(config.device)

        if args.encoder_smoke_test:
            encoder = TransformerEncoderWrapper.from_config(config.validate(), device=device)
            print(f"Transformer Encoder Output shape: {tuple(encoder.smoke_test())}")
            return

        env = make_env(config.env)
        try:
            if not isinstance(env.action_space, gym.spaces.Box):
                raise ValueError(
                    f"Env {config.env} has a {type(env.action_space).__name__} action space; "
                    "only continuous Box action spaces are supported"
                )
            config.state_dim = int(np.prod(env.observation_space.shape))
            config.act_dim = int(np.prod(env.action_space.shape))
            config.validate()
            logger.info("Env %s: state_dim=%d act_dim=%d", config.env, config.state_dim, config.act_dim)

            model = DecisionTransformer.from_config(config, device=device)
            writer, logdir = tb_writer(args.logdir)
            try:
                setup_logging(config.log_level, logdir / "rollout.log")
                config.to_yaml(logdir / "config.yaml")

                returns, lengths = evaluate(model, env, config, writer=writer)

                writer.add_scalar("summary/mean_return", np.mean(returns), 0)
                writer.add_scalar("summary/mean_length", np.mean(lengths), 0)
            finally:
                writer.flush(); writer.close()
        finally:
            env.close()
            close_file_handlers()

    # console
    print("-----------------------------------------------------------")
    print(f"{'Episodes':25}: {config.episodes}")
    print(f"{'Context window':25}: {config.max_length}")
    print(f"{'Mean return':25}: {np.mean(returns):.3f}")
    print(f"{'Best return':25}: {np.max(returns):.3f}")
    print(f"{'Mean episode length':25}: {np.mean(lengths):.1f}")
    print("-----------------------------------------------------------")
    print(f"TensorBoard logs ➜ {logdir}\nRun   tensorboard --logdir {args.logdir}")


if __name__ == "__main__":
    main()
