"""Generic multi-head self-attention encoder wrapper."""

import logging
from typing import Optional

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)


class TransformerEncoderWrapper(nn.Module):
    """Stack of stock self-attention encoder layers.

    Maps [batch_size, seq_len, d_model] to [batch_size, seq_len, d_model].
    """

    def __init__(
        self,
        n_layers: int = 4,
        n_heads: int = 8,
        d_model: int = 64,
        dim_feedforward: Optional[int] = None,
        dropout: float = 0.1,
        device: Optional[torch.device] = None,
    ):
        """Initialize the encoder stack.

        Args:
            n_layers: Number of encoder layers
            n_heads: Number of attention heads
            d_model: Embedding width
            dim_feedforward: Feed-forward width (default: 4 * d_model)
            dropout: Dropout probability
            device: Device the parameters are allocated on
        """
        super().__init__()

        if n_layers <= 0 or n_heads <= 0 or d_model <= 0:
            raise ValueError(
                f"n_layers, n_heads and d_model must be positive, got {n_layers}, {n_heads}, {d_model}"
            )
        if d_model % n_heads != 0:
            raise ValueError(f"d_model ({d_model}) must be divisible by n_heads ({n_heads})")

        self.d_model = d_model
        self.n_heads = n_heads
        self.n_layers = n_layers
        self.dim_feedforward = dim_feedforward or 4 * d_model

        encoder_layer = nn.TransformerEncoderLayer(
            d_model=d_model,
            nhead=n_heads,
            dim_feedforward=self.dim_feedforward,
            dropout=dropout,
            batch_first=True,
            device=device,
        )
        self.encoder = nn.TransformerEncoder(
            encoder_layer, num_layers=n_layers, enable_nested_tensor=False
        )

    @classmethod
    def from_config(cls, config, device: Optional[torch.device] = None) -> "TransformerEncoderWrapper":
        return cls(
            n_layers=config.encoder_layers,
            n_heads=config.encoder_heads,
            d_model=config.encoder_d_model,
            dim_feedforward=config.encoder_dim_feedforward,
            dropout=config.encoder_dropout,
            device=device,
        )

    def forward(
        self,
        x: torch.Tensor,  # [batch_size, seq_len, d_model]
        padding_mask: Optional[torch.Tensor] = None,  # [batch_size, seq_len], 1 for real tokens
    ) -> torch.Tensor:
        if x.dim() != 3 or x.shape[-1] != self.d_model:
            raise ValueError(
                f"Expected input of shape [batch_size, seq_len, {self.d_model}], got {tuple(x.shape)}"
            )

        # nn.TransformerEncoder wants True at positions to ignore
        key_padding_mask = None
        if padding_mask is not None:
            if tuple(padding_mask.shape) != tuple(x.shape[:2]):
                raise ValueError(
                    f"padding_mask must have shape {tuple(x.shape[:2])}, got {tuple(padding_mask.shape)}"
                )
            key_padding_mask = padding_mask == 0

        return self.encoder(x, src_key_padding_mask=key_padding_mask)

    def smoke_test(self, batch_size: int = 2, seq_len: int = 5) -> torch.Size:
        """Run a uniform random batch through the encoder and return the output shape."""
        device = next(self.parameters()).device
        was_training = self.training
        self.eval()
        try:
            with torch.no_grad():
                x = torch.rand(batch_size, seq_len, self.d_model, device=device)
                output = self(x)
        finally:
            self.train(was_training)

        logger.info("Transformer encoder output shape: %s", tuple(output.shape))
        return output.shape
