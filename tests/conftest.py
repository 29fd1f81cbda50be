import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# repo root on sys.path so tests import the top-level packages directly
ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

from model_service.predictors import default_predictors  # noqa: E402
from shared.config import ConfigStore, EngineConfig  # noqa: E402
from shared.models import MarketSnapshot  # noqa: E402
from shared.params import EngineParameters, ParameterStore  # noqa: E402

T0 = datetime(2024, 3, 4, 14, 0, tzinfo=timezone.utc)


def make_window(instrument="ES", n=30, start=100.0, step=0.1, atr=1.0, t0=T0, **indicators):
    """n one-second snapshots on a straight line (step per bar)."""
    out = []
    for i in range(n):
        px = start + i * step
        ind = {"atr": atr, **indicators} if atr else dict(indicators)
        out.append(MarketSnapshot(
            instrument=instrument,
            timestamp=t0 + timedelta(seconds=i),
            price=px,
            volume=100.0 + i,
            bid=px - 0.05,
            ask=px + 0.05,
            high=px + 0.1,
            low=px - 0.1,
            indicators=ind,
        ))
    return out


@pytest.fixture
def cfg():
    return EngineConfig(persist=False, api_port=0)


@pytest.fixture
def config(cfg):
    return ConfigStore(cfg)


@pytest.fixture
def params():
    names = [p.name for p in default_predictors()]
    return ParameterStore(EngineParameters.initial(names, 0.65))


@pytest.fixture
def window():
    return make_window()
