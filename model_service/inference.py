"""
inference.py – optional torch ensemble member
---------------------------------------------
• A small MLP over the schema-v1 feature vector with three output
  classes (long, short, hold).
• Registered only when MODEL_PATH points at a saved state_dict; runs in a
  worker thread (`blocking = True`) so inference never stalls the loop.
"""
from __future__ import annotations

import os
from typing import Optional

import numpy as np
import torch
import torch.nn as nn

from data_loader.augmenter import FEATURE_SCHEMA_V1
from shared.logging import get_logger
from shared.models import FeatureVector, ModelPrediction

from .predictors import Predictor

log = get_logger("model_service.inference")

CLASS_NAMES = ["long", "short", "hold"]
DEV = torch.device("cuda" if torch.cuda.is_available() else "cpu")


class DirectionNet(nn.Module):
    def __init__(self, in_dim: int = len(FEATURE_SCHEMA_V1), hidden: int = 64):
        super().__init__()
        self.body = nn.Sequential(
            nn.Linear(in_dim, hidden), nn.ReLU(),
            nn.Dropout(0.1),
            nn.Linear(hidden, hidden), nn.ReLU(),
        )
        self.head = nn.Sequential(nn.LayerNorm(hidden), nn.Linear(hidden, len(CLASS_NAMES)))

    def forward(self, x):
        return self.head(self.body(x))


class TorchPredictor(Predictor):
    name = "neural"
    blocking = True

    def __init__(self, model: DirectionNet, name: Optional[str] = None):
        self.model = model.to(DEV).eval()
        if name:
            self.name = name

    @torch.no_grad()
    def score(self, x: np.ndarray) -> np.ndarray:
        X = torch.from_numpy(x).unsqueeze(0).to(DEV)          # (1, F)
        return torch.softmax(self.model(X), 1)[0].cpu().numpy()

    def predict(self, fv: FeatureVector) -> ModelPrediction:
        probs = self.score(fv.as_array())
        p_long, p_short, p_hold = (float(v) for v in probs)
        # a confident "hold" shows up as low confidence in either direction
        conf = max(p_long, p_short) * (1.0 - p_hold)
        return ModelPrediction(self.name, long_score=p_long, short_score=p_short,
                               confidence=conf)


def load_torch_predictor(path: str = "") -> Optional[TorchPredictor]:
    """Return a ready predictor for `path` (or MODEL_PATH); None when absent."""
    path = path or os.getenv("MODEL_PATH", "")
    if not path or not os.path.isfile(path):
        return None
    model = DirectionNet()
    model.load_state_dict(torch.load(path, map_location=DEV))
    log.info("weights loaded from %s", path)
    return TorchPredictor(model)
