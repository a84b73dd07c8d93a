import numpy as np
import pytest
import requests

from resonance_loop.errors import DependencyError
from resonance_loop.utils.embedding import HASHING_DIMENSION, EmbeddingService, hashing_embedding


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.exceptions.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


def test_hashing_embedding_is_deterministic_and_normalized():
    a = hashing_embedding("slow breathing before sleep")
    b = hashing_embedding("Slow breathing before sleep")
    assert a.shape == (HASHING_DIMENSION,)
    assert np.allclose(a, b)
    assert np.linalg.norm(a) == pytest.approx(1.0)
    assert not hashing_embedding("!!!").any()


def test_none_method_is_disabled():
    service = EmbeddingService(method="none")
    assert not service.enabled
    assert service.try_embed("anything") is None
    with pytest.raises(DependencyError):
        service.embed("anything")


def test_unknown_method_rejected():
    with pytest.raises(ValueError):
        EmbeddingService(method="magic")


def test_empty_text_cannot_be_embedded():
    with pytest.raises(DependencyError):
        EmbeddingService(method="hashing").embed("   ")


def test_http_embedding(monkeypatch):
    calls = {}

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.update(url=url, json=json, headers=headers, timeout=timeout)
        return FakeResponse({"embedding": [0.1, 0.2, 0.3]})

    monkeypatch.setattr(requests, "post", fake_post)
    service = EmbeddingService(method="http", url="http://embed.local/v1", timeout=2.0, api_key="k")
    vec = service.embed("calm evening")
    assert vec.tolist() == pytest.approx([0.1, 0.2, 0.3])
    assert calls["timeout"] == 2.0
    assert calls["headers"]["Authorization"] == "Bearer k"
    assert calls["json"] == {"text": "calm evening"}


def test_http_timeout_is_not_retried(monkeypatch):
    attempts = []

    def slow_post(*args, **kwargs):
        attempts.append(1)
        raise requests.exceptions.Timeout("too slow")

    monkeypatch.setattr(requests, "post", slow_post)
    service = EmbeddingService(method="http", url="http://embed.local/v1")
    with pytest.raises(DependencyError):
        service.embed("calm evening")
    assert service.try_embed("calm evening") is None
    assert len(attempts) == 2


def test_http_bad_payload(monkeypatch):
    monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse({"vector": []}))
    with pytest.raises(DependencyError):
        EmbeddingService(method="http", url="http://embed.local/v1").embed("x")

    monkeypatch.setattr(requests, "post", lambda *a, **k: FakeResponse({}, status=500))
    with pytest.raises(DependencyError):
        EmbeddingService(method="http", url="http://embed.local/v1").embed("x")


def test_http_without_url():
    with pytest.raises(DependencyError):
        EmbeddingService(method="http").embed("x")


def test_from_config():
    service = EmbeddingService.from_config({"embedding_method": "hashing", "embedding_timeout": 1.5})
    assert service.method == "hashing"
    assert service.timeout == 1.5
    assert service.enabled
