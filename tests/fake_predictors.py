"""Predictor classes loaded by path in tests ("tests.fake_predictors:EchoPredictor")."""

import time


class EchoPredictor:
    """Returns the payload it was given."""

    def __init__(self, config):
        self.config = config
        self.delay = float(config.get("delay", 0.0))
        self.cleaned_up = False

    def predict(self, payload):
        if self.delay:
            time.sleep(self.delay)
        if isinstance(payload, dict) and payload.get("fail"):
            raise ValueError("requested failure")
        return {"echo": payload}

    def cleanup(self):
        self.cleaned_up = True


class BrokenPredictor:
    """Fails during construction."""

    def __init__(self, config):
        raise RuntimeError("weights are corrupted")

    def predict(self, payload):
        return payload


class NoPredictMethod:
    def __init__(self, config):
        self.config = config
