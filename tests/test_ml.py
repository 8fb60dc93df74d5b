"""
Tests for the ML engine.
"""

import pytest
import requests

from conftest import FakeResponse, FakeSession

from phishsense.engines.ml import MLEngine
from phishsense.exceptions import ModelNotReadyError
from phishsense.models import EmailContent, EngineStatus, MLConfig, MLModelType

ENDPOINT = "https://ml.example.com/score"


def _email(subject, body=""):
    return EmailContent(subject=subject, body=body, sender="x@example.com")


@pytest.fixture
def local_engine(patterns):
    engine = MLEngine(patterns, MLConfig(enabled=True))
    engine.initialize()
    return engine


def _remote_engine(patterns, response):
    session = FakeSession({ENDPOINT: response})
    engine = MLEngine(
        patterns,
        MLConfig(enabled=True, model_type=MLModelType.REMOTE, api_endpoint=ENDPOINT),
        session=session,
    )
    engine.initialize()
    return engine, session


class TestDisabled:
    """The engine when ML is switched off."""

    def test_disabled_is_skipped(self, patterns):
        engine = MLEngine(patterns)

        result = engine.analyze(_email("hello"))

        assert result.status == EngineStatus.SKIPPED
        assert result.details == {"confidence": 0.0, "model_used": "disabled", "processing_time": 0.0}
        assert not engine.is_ready()

    def test_initialize_is_noop_when_disabled(self, patterns):
        engine = MLEngine(patterns, MLConfig(enabled=True, model_type=MLModelType.DISABLED))
        engine.initialize()

        assert not engine.is_ready()

    def test_not_initialized_reports_error(self, patterns):
        engine = MLEngine(patterns, MLConfig(enabled=True))

        result = engine.analyze(_email("hello"))

        assert result.status == EngineStatus.ERROR
        assert result.findings[0].id == "ml-error"
        assert result.details["model_used"] == "error"
        with pytest.raises(ModelNotReadyError):
            engine.predict_local(_email("hello"))


class TestLocalModel:
    """The bundled MLP classifier."""

    def test_feature_vector_shape(self, local_engine, patterns):
        x = local_engine.features(["Click here to update your password", "hi"])

        assert x.shape == (2, patterns.keyword_pattern_count + 10)
        assert local_engine.feature_count == x.shape[1]

    def test_url_slot(self, local_engine):
        x = local_engine.features(["see https://example.com", "see example.com"])

        assert x[0][-1] == 1.0
        assert x[1][-1] == 0.0

    def test_separates_training_examples(self, local_engine):
        phishing, _ = local_engine.predict_local(_email("Click here to update your password"))
        benign, _ = local_engine.predict_local(_email("Meeting scheduled for next week"))

        assert phishing > 0.5
        assert benign < 0.5

    def test_analyze_details(self, local_engine):
        result = local_engine.analyze(_email("Security alert for your account"))

        assert result.status == EngineStatus.COMPLETED
        assert result.details["model_used"] == "sklearn-mlp"
        assert 0 <= result.details["confidence"] <= 1
        assert 0 <= result.score <= 100
        assert local_engine.is_ready()

    def test_save_and_reload(self, local_engine, patterns, tmp_path):
        path = local_engine.save_model(tmp_path / "models" / "mlp.joblib")

        reloaded = MLEngine(patterns, MLConfig(enabled=True, model_path=str(path)))
        reloaded.initialize()

        text = _email("Verify your identity to continue")
        assert reloaded.predict_local(text)[0] == pytest.approx(local_engine.predict_local(text)[0])

    def test_save_without_model(self, patterns, tmp_path):
        with pytest.raises(ModelNotReadyError):
            MLEngine(patterns).save_model(tmp_path / "mlp.joblib")

    def test_mode_change_requires_reinitialization(self, local_engine):
        local_engine.update_config(model_type="remote", api_endpoint=ENDPOINT)

        assert local_engine.config.model_type == MLModelType.REMOTE
        assert not local_engine.is_ready()

    def test_threshold_change_keeps_readiness(self, local_engine):
        local_engine.update_config(confidence_threshold=0.9)

        assert local_engine.is_ready()
        assert local_engine.analyze(_email("hi")).details["below_confidence_threshold"] in (True, False)

    def test_ready_for_per_call_config(self, local_engine):
        assert local_engine.is_ready_for(None)
        assert local_engine.is_ready_for(MLConfig(enabled=True))
        assert not local_engine.is_ready_for(MLConfig(enabled=False))
        assert not local_engine.is_ready_for(
            MLConfig(enabled=True, model_type=MLModelType.REMOTE, api_endpoint=ENDPOINT)
        )
        assert not local_engine.is_ready_for(MLConfig(enabled=True, model_path="/other/model.joblib"))

    def test_per_call_config_is_not_stored(self, local_engine):
        strict = MLConfig(enabled=True, confidence_threshold=1.01)

        result = local_engine.analyze(_email("Security alert for your account"), config=strict)

        assert result.details["below_confidence_threshold"] is True
        assert local_engine.config == MLConfig(enabled=True)


class TestRemoteModel:
    """The external scoring endpoint."""

    def test_remote_probability(self, patterns):
        engine, session = _remote_engine(
            patterns, FakeResponse(payload={"probability": 0.9, "confidence": 0.8})
        )

        result = engine.analyze(_email("Verify now"))

        assert result.score == pytest.approx(90.0)
        assert [f.id for f in result.findings] == ["ml-high-risk"]
        assert result.details["model_used"] == "external-api"
        assert result.details["below_confidence_threshold"] is False
        assert session.calls == [ENDPOINT]

    def test_medium_probability(self, patterns):
        engine, _ = _remote_engine(patterns, FakeResponse(payload={"probability": 0.5}))

        result = engine.analyze(_email("Hello"))

        assert [f.id for f in result.findings] == ["ml-medium-risk"]
        assert result.details["confidence"] == 0.5

    @pytest.mark.parametrize("response", [
        FakeResponse(payload={"score": 0.9}),
        FakeResponse(payload={"probability": "high"}),
        FakeResponse(status_code=500),
        FakeResponse(text="not json"),
        requests.exceptions.ConnectionError("unreachable"),
    ])
    def test_remote_failures_become_error_results(self, patterns, response):
        engine, _ = _remote_engine(patterns, response)

        result = engine.analyze(_email("Hello"))

        assert result.status == EngineStatus.ERROR
        assert result.score == 0
        assert result.findings[0].id == "ml-error"

    def test_remote_requires_initialization(self, patterns):
        engine = MLEngine(
            patterns,
            MLConfig(enabled=True, model_type=MLModelType.REMOTE, api_endpoint=ENDPOINT),
            session=FakeSession(),
        )

        result = engine.analyze(_email("Hello"))

        assert result.status == EngineStatus.ERROR
