from __future__ import annotations

import json
import math

import httpx
import pytest

from cortex.core.errors import EmbeddingError, EngineImportError, GenerationError
from cortex.inference.base import InferenceEngine, SamplingParams
from cortex.inference.ollama_engine import OllamaEngine
from cortex.inference.stub_engine import StubEngine
from cortex.inference.templates import ChatTemplate
from cortex.memory.embedder import DeterministicEmbedder, OpenAIEmbedder
from cortex.runtime import create_runtime


def ndjson(*chunks: dict) -> bytes:
    return ("\n".join(json.dumps(chunk) for chunk in chunks) + "\n").encode("utf-8")


def ollama_handler(seen: list[dict]):
    counter = {"calls": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/generate":
            payload = json.loads(request.content)
            seen.append(payload)
            counter["calls"] += 1
            base = counter["calls"] * 10
            return httpx.Response(
                200,
                content=ndjson(
                    {"response": "Hello", "done": False},
                    {"response": " world", "done": False},
                    {"response": "", "done": True, "context": [base, base + 1, base + 2]},
                ),
            )
        if request.url.path == "/api/embed":
            return httpx.Response(200, json={"embeddings": [[0.5] * 64]})
        return httpx.Response(404, json={"error": "not found"})

    return handler


@pytest.mark.anyio
async def test_ollama_engine_streams_and_exports_context():
    seen: list[dict] = []
    transport = httpx.MockTransport(ollama_handler(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        engine = OllamaEngine(
            base_url="http://ollama.test",
            model_name="llama3",
            embedding_dim=64,
            template=ChatTemplate.CHATML,
            http_client=client,
        )
        assert isinstance(engine, InferenceEngine)

        pieces = [
            piece
            async for piece in engine.generate(
                [{"role": "user", "content": "hi"}], SamplingParams(max_tokens=16, stop=["</s>"])
            )
        ]

        assert pieces == ["Hello", " world"]
        assert seen[0]["raw"] is True
        assert seen[0]["prompt"].startswith("<|im_start|>user\nhi<|im_end|>")
        assert seen[0]["options"]["num_predict"] == 16
        assert seen[0]["options"]["stop"] == ["</s>"]

        blob = await engine.export_state()
        assert json.loads(blob) == {"engine_id": "ollama", "model": "llama3", "tokens": [10, 11, 12]}

        vector = await engine.embed("text")
        assert len(vector) == 64

        other_model = OllamaEngine(
            base_url="http://ollama.test", model_name="mistral", embedding_dim=64, http_client=client
        )
        with pytest.raises(EngineImportError):
            await other_model.import_state(blob)
        with pytest.raises(EngineImportError):
            await engine.import_state(await StubEngine().export_state())
        with pytest.raises(GenerationError) as excinfo:
            await engine.tokenize("hi")
        assert excinfo.value.code == "ENGINE_UNSUPPORTED"


@pytest.mark.anyio
async def test_ollama_engine_maps_failures():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/generate":
            if json.loads(request.content)["prompt"].endswith("busy\n"):
                return httpx.Response(503, text="overloaded")
            return httpx.Response(200, content=ndjson({"error": "model not found"}))
        return httpx.Response(200, json={"embeddings": [[1.0, 2.0]]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        engine = OllamaEngine(
            base_url="http://ollama.test",
            model_name="llama3",
            embedding_dim=64,
            template=ChatTemplate.RAW,
            http_client=client,
        )

        with pytest.raises(GenerationError) as excinfo:
            async for _ in engine.generate([{"role": "user", "content": "busy\n"}], SamplingParams()):
                pass
        assert excinfo.value.code == "PROVIDER_UPSTREAM"
        assert excinfo.value.retryable

        with pytest.raises(GenerationError) as excinfo:
            async for _ in engine.generate([{"role": "user", "content": "hi"}], SamplingParams()):
                pass
        assert excinfo.value.message == "model not found"

        with pytest.raises(EmbeddingError):
            await engine.embed("wrong size")


@pytest.mark.anyio
async def test_session_round_trip_over_ollama(settings):
    seen: list[dict] = []
    transport = httpx.MockTransport(ollama_handler(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        engine = OllamaEngine(
            base_url="http://ollama.test", model_name="llama3", embedding_dim=64, http_client=client
        )
        runtime = await create_runtime(settings, inference_engine=engine)
        try:
            session = await runtime.open_session("ollama-session")
            assert await session.chat("first") == "Hello world"
            checkpoint = await session.checkpoint()
            await session.chat("second")
            assert json.loads(await engine.export_state())["tokens"] == [20, 21, 22]

            assert "context" not in seen[0]
            assert seen[1]["context"] == [10, 11, 12]
            assert seen[1]["prompt"].startswith("<|start_header_id|>user<|end_header_id|>\n\nsecond")
            assert "first" not in seen[1]["prompt"]

            await session.restore(checkpoint.id)

            assert json.loads(await engine.export_state())["tokens"] == [10, 11, 12]
            assert len(session.messages) == 2

            await session.chat("third")
            assert seen[2]["context"] == [10, 11, 12]
            assert "second" not in seen[2]["prompt"]

            await session.clear()
            assert engine.context_used == 0
            await session.chat("fresh start")
            assert "context" not in seen[3]
            assert seen[3]["prompt"].startswith("<|begin_of_text|>")
        finally:
            await runtime.close()


@pytest.mark.anyio
async def test_ollama_engine_resends_changed_system_block():
    seen: list[dict] = []
    transport = httpx.MockTransport(ollama_handler(seen))
    async with httpx.AsyncClient(transport=transport) as client:
        engine = OllamaEngine(
            base_url="http://ollama.test",
            model_name="llama3",
            embedding_dim=64,
            template=ChatTemplate.CHATML,
            http_client=client,
        )
        params = SamplingParams()
        first = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]
        async for _ in engine.generate(first, params):
            pass
        same_system = [
            *first,
            {"role": "assistant", "content": "Hello world"},
            {"role": "user", "content": "again"},
        ]
        async for _ in engine.generate(same_system, params):
            pass
        new_system = [
            {"role": "system", "content": "be verbose"},
            *same_system[1:],
            {"role": "user", "content": "more"},
        ]
        async for _ in engine.generate(new_system, params):
            pass

    assert seen[1]["prompt"] == "<|im_start|>user\nagain<|im_end|>\n<|im_start|>assistant\n"
    assert seen[1]["context"] == [10, 11, 12]
    assert seen[2]["prompt"].startswith("<|im_start|>system\nbe verbose<|im_end|>")
    assert seen[2]["context"] == [20, 21, 22]


@pytest.mark.anyio
async def test_openai_embedder_normalizes_vectors():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        return httpx.Response(
            200,
            json={"data": [{"embedding": [3.0, 4.0, 0.0]} for _ in body["input"]]},
        )

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = OpenAIEmbedder(
            base_url="https://api.openai.test/",
            api_key="sk-test",
            model_name="text-embedding-3-small",
            dimension=3,
            http_client=client,
        )
        vectors = await embedder.embed_texts(["a", "b"])

    assert vectors == [[0.6, 0.8, 0.0], [0.6, 0.8, 0.0]]


@pytest.mark.anyio
async def test_openai_embedder_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        if json.loads(request.content)["input"] == ["fail"]:
            return httpx.Response(401, json={"error": "bad key"})
        if json.loads(request.content)["input"] == ["overloaded"]:
            return httpx.Response(503, json={"error": "try later"})
        return httpx.Response(200, json={"data": [{"embedding": [1.0, 2.0]}]})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = OpenAIEmbedder(
            base_url="https://api.openai.test",
            api_key="sk-test",
            model_name="m",
            dimension=3,
            http_client=client,
        )
        with pytest.raises(EmbeddingError) as excinfo:
            await embedder.embed("fail")
        assert not excinfo.value.retryable
        with pytest.raises(EmbeddingError) as excinfo:
            await embedder.embed("overloaded")
        assert excinfo.value.retryable
        with pytest.raises(EmbeddingError):
            await embedder.embed("short vector")


@pytest.mark.anyio
async def test_deterministic_embedder_is_stable_and_normalized():
    embedder = DeterministicEmbedder(dimension=16)

    first = await embedder.embed("Hello, world")
    second = await embedder.embed("hello, WORLD")

    assert first == second
    assert len(first) == 16
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0)
    with pytest.raises(EmbeddingError):
        DeterministicEmbedder(dimension=0)


@pytest.mark.anyio
async def test_openai_embedder_batches_and_orders_rows_by_index():
    batches: list[list[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        texts = json.loads(request.content)["input"]
        batches.append(texts)
        rows = [
            {"index": index, "embedding": [float(len(text)), 0.0]}
            for index, text in enumerate(texts)
        ]
        return httpx.Response(200, json={"data": list(reversed(rows))})

    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport) as client:
        embedder = OpenAIEmbedder(
            base_url="https://api.openai.test",
            api_key="sk-test",
            model_name="m",
            dimension=2,
            batch_size=2,
            http_client=client,
        )
        vectors = await embedder.embed_texts(["a", "bb", "ccc"])

    assert batches == [["a", "bb"], ["ccc"]]
    assert vectors == [[1.0, 0.0], [1.0, 0.0], [1.0, 0.0]]


@pytest.mark.anyio
async def test_deterministic_embedder_scores_shared_words():
    embedder = DeterministicEmbedder(dimension=128)

    tea, tea_again, rockets = await embedder.embed_texts(
        ["green tea is served hot", "hot green tea", "rockets need liquid oxygen"]
    )

    def cosine(left, right):
        return sum(a * b for a, b in zip(left, right))

    assert cosine(tea, tea_again) > cosine(tea, rockets)
    assert await embedder.embed("a b c") == [1.0] + [0.0] * 127
