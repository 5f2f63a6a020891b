"""
Tests para rag/query/embedder.py — Carga del modelo y timeout.

SentenceTransformer se reemplaza por un modelo falso que cuenta cuántas
veces se construye y puede tardar en cargar.
"""

import asyncio
import threading
import time

import numpy as np
import pytest

import rag.query.embedder as embedder_module
from agent.errors import UpstreamUnavailable
from api.main import build_orchestrator
from rag.query.embedder import SentenceTransformerEmbedder


class SlowModel:
    loads = 0
    load_seconds = 0.0
    _count_lock = threading.Lock()

    def __init__(self, name):
        with SlowModel._count_lock:
            SlowModel.loads += 1
        time.sleep(SlowModel.load_seconds)
        self.name = name

    def encode(self, texts, convert_to_numpy=True):
        return np.ones((len(texts), 3), dtype=np.float32)


@pytest.fixture
def slow_model(monkeypatch):
    SlowModel.loads = 0
    SlowModel.load_seconds = 0.3
    monkeypatch.setattr(embedder_module, "SentenceTransformer", SlowModel)
    return SlowModel


class TestModelLoading:
    def test_concurrent_access_loads_once(self, slow_model):
        embedder = SentenceTransformerEmbedder("fake-model")

        async def touch():
            return await asyncio.gather(
                *[asyncio.to_thread(lambda: embedder.model) for _ in range(3)]
            )

        models = asyncio.run(touch())
        assert slow_model.loads == 1
        assert all(m is models[0] for m in models)

    def test_preloaded_model_not_bound_by_timeout(self, slow_model):
        embedder = SentenceTransformerEmbedder("fake-model", timeout_seconds=0.1)
        embedder.load()

        async def embed_many():
            return await asyncio.gather(*[embedder.embed("MNPとは？") for _ in range(3)])

        vectors = asyncio.run(embed_many())
        assert vectors == [[1.0, 1.0, 1.0]] * 3
        assert slow_model.loads == 1

    def test_cold_load_over_timeout(self, slow_model):
        embedder = SentenceTransformerEmbedder("fake-model", timeout_seconds=0.05)
        with pytest.raises(UpstreamUnavailable):
            asyncio.run(embedder.embed("MNPとは？"))

    def test_injected_model_skips_loading(self, slow_model):
        embedder = SentenceTransformerEmbedder(model=SlowModel.__new__(SlowModel))
        assert asyncio.run(embedder.embed("x")) == [1.0, 1.0, 1.0]
        assert slow_model.loads == 0


class TestStartupWarmUp:
    def test_build_orchestrator_loads_configured_model(self, slow_model, test_settings):
        slow_model.load_seconds = 0.0
        settings = test_settings.model_copy(
            update={"EMBEDDING_MODEL": "intfloat/multilingual-e5-base"}
        )

        orchestrator = build_orchestrator(settings)

        embedder = orchestrator.retriever.embedder
        assert slow_model.loads == 1
        assert embedder.model.name == "intfloat/multilingual-e5-base"

    def test_load_failure_does_not_block_startup(self, monkeypatch, test_settings):
        def broken(name):
            raise OSError("sin red")

        monkeypatch.setattr(embedder_module, "SentenceTransformer", broken)
        orchestrator = build_orchestrator(test_settings)
        assert orchestrator.retriever.embedder._model is None
