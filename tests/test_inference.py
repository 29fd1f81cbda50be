import numpy as np
import torch

from conftest import make_window
from data_loader.augmenter import FEATURE_SCHEMA_V1, compute_features
from model_service.inference import CLASS_NAMES, DirectionNet, TorchPredictor, load_torch_predictor


def _net():
    torch.manual_seed(0)
    return DirectionNet()


def test_net_outputs_one_logit_per_class():
    net = _net().eval()
    out = net(torch.zeros(2, len(FEATURE_SCHEMA_V1)))
    assert tuple(out.shape) == (2, len(CLASS_NAMES))


def test_score_is_a_distribution():
    pred = TorchPredictor(_net())
    probs = pred.score(np.zeros(len(FEATURE_SCHEMA_V1), dtype=np.float32))
    assert probs.shape == (3,)
    assert abs(float(probs.sum()) - 1.0) < 1e-5


def test_predict_runs_off_loop_and_is_bounded():
    pred = TorchPredictor(_net())
    assert pred.name == "neural"
    assert pred.blocking is True
    p = pred.predict(compute_features(make_window(n=40)))
    assert p.producer == "neural"
    assert 0.0 <= p.confidence <= 1.0
    assert abs(p.long_score + p.short_score - 1.0) < 1e-9
    assert not p.failed


def test_custom_name():
    assert TorchPredictor(_net(), name="net2").name == "net2"


async def test_apredict_uses_worker_thread():
    pred = TorchPredictor(_net())
    p = await pred.apredict(compute_features(make_window(n=40)))
    assert p.producer == "neural"


def test_missing_weights_return_none(tmp_path, monkeypatch):
    monkeypatch.delenv("MODEL_PATH", raising=False)
    assert load_torch_predictor(str(tmp_path / "nope.pt")) is None
    assert load_torch_predictor("") is None


def test_saved_weights_round_trip(tmp_path):
    net = _net()
    path = tmp_path / "direction.pt"
    torch.save(net.state_dict(), path)
    pred = load_torch_predictor(str(path))
    assert isinstance(pred, TorchPredictor)
    x = np.linspace(-1, 1, len(FEATURE_SCHEMA_V1)).astype(np.float32)
    expected = TorchPredictor(net).score(x)
    assert np.allclose(pred.score(x), expected, atol=1e-6)
