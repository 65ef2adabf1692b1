"""
Unit tests for SDK layer.

Tests the OpenAI and Pexels adapters and the reel downloader with the
network and subprocess boundaries mocked out.
"""

import asyncio
import base64
import os
import shutil
import tempfile
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import httpx
import pytest
from openai import OpenAIError

from content_forge.core.errors import DownloadError, ProviderError, TranscriptionError, ValidationError
from content_forge.sdk.downloader import YtDlpDownloader, extract_reel_id
from content_forge.sdk.openai_client import (
    MAX_TRANSCRIPTION_BYTES,
    OpenAIImageGenerator,
    OpenAITextGenerator,
    OpenAITranscriber,
)
from content_forge.sdk.pexels import PexelsPhotoSearch


def _chat_response(content="Post body", prompt_tokens=120, completion_tokens=380):
    usage = SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)], usage=usage)


class TestOpenAITextGenerator:
    """Test the chat-completions adapter."""

    def setup_method(self):
        self.client = Mock()
        self.client.chat.completions.create = AsyncMock(return_value=_chat_response())

    def test_generate_success(self):
        generator = OpenAITextGenerator("gpt-4o-mini", client=self.client)
        result = asyncio.run(generator.generate("Write about RAG", system="Be brief"))

        assert result.content == "Post body"
        assert result.prompt_tokens == 120
        assert result.completion_tokens == 380
        assert result.tokens_used == 500
        assert result.model_name == "gpt-4o-mini"

        kwargs = self.client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["messages"][0] == {"role": "system", "content": "Be brief"}
        assert kwargs["messages"][1] == {"role": "user", "content": "Write about RAG"}

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValidationError, match="model is required"):
            OpenAITextGenerator("", client=self.client)

    def test_empty_prompt_rejected_before_call(self):
        generator = OpenAITextGenerator(client=self.client)
        with pytest.raises(ValidationError):
            asyncio.run(generator.generate("   "))
        self.client.chat.completions.create.assert_not_called()

    def test_openai_error_becomes_provider_error(self):
        self.client.chat.completions.create = AsyncMock(side_effect=OpenAIError("quota exceeded"))
        generator = OpenAITextGenerator(client=self.client)

        with pytest.raises(ProviderError, match="quota exceeded") as exc_info:
            asyncio.run(generator.generate("Write"))
        assert exc_info.value.provider == "openai"

    def test_empty_content_is_an_error(self):
        self.client.chat.completions.create = AsyncMock(return_value=_chat_response(content=""))
        generator = OpenAITextGenerator(client=self.client)

        with pytest.raises(ProviderError, match="no content"):
            asyncio.run(generator.generate("Write"))

    def test_missing_usage_counts_zero_tokens(self, caplog):
        response = _chat_response()
        response.usage = None
        self.client.chat.completions.create = AsyncMock(return_value=response)
        generator = OpenAITextGenerator(client=self.client)

        result = asyncio.run(generator.generate("Write"))

        assert result.tokens_used == 0
        assert "missing usage" in caplog.text


class TestOpenAIImageGenerator:
    """Test the image adapter."""

    def setup_method(self):
        self.client = Mock()

    def _respond(self, data):
        self.client.images.generate = AsyncMock(return_value=SimpleNamespace(data=data))

    def test_decodes_base64_image(self):
        self._respond([SimpleNamespace(b64_json=base64.b64encode(b"png-bytes").decode())])
        generator = OpenAIImageGenerator("gpt-image-1", client=self.client)

        image = asyncio.run(generator.generate("An infographic"))

        assert image.image_bytes == b"png-bytes"
        assert image.has_image
        assert image.mime_type == "image/png"
        assert "response_format" not in self.client.images.generate.call_args.kwargs

    def test_dall_e_requests_base64(self):
        self._respond([SimpleNamespace(b64_json=base64.b64encode(b"x").decode())])
        generator = OpenAIImageGenerator("dall-e-3", client=self.client)

        asyncio.run(generator.generate("An infographic"))
        assert self.client.images.generate.call_args.kwargs["response_format"] == "b64_json"

    @pytest.mark.parametrize("data", [[], [SimpleNamespace(b64_json=None)]])
    def test_no_image_data_returns_empty_result(self, data):
        self._respond(data)
        generator = OpenAIImageGenerator(client=self.client)

        image = asyncio.run(generator.generate("An infographic"))
        assert image.image_bytes is None
        assert not image.has_image

    def test_invalid_base64_is_an_error(self):
        self._respond([SimpleNamespace(b64_json="not base64!!")])
        generator = OpenAIImageGenerator(client=self.client)

        with pytest.raises(ProviderError, match="could not be decoded"):
            asyncio.run(generator.generate("An infographic"))

    def test_openai_error_becomes_provider_error(self):
        self.client.images.generate = AsyncMock(side_effect=OpenAIError("content policy"))
        generator = OpenAIImageGenerator(client=self.client)

        with pytest.raises(ProviderError, match="content policy"):
            asyncio.run(generator.generate("An infographic"))


class TestOpenAITranscriber:
    """Test the transcription adapter."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.audio = Path(self.temp_dir) / "reel.m4a"
        self.audio.write_bytes(b"audio")
        self.client = Mock()
        self.client.audio.transcriptions.create = AsyncMock(
            return_value=SimpleNamespace(text=" Hello world ", duration=42.5)
        )

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_transcribe_success(self):
        transcriber = OpenAITranscriber("whisper-1", client=self.client)
        result = asyncio.run(transcriber.transcribe(self.audio))

        assert result.text == "Hello world"
        assert result.duration_seconds == 42.5
        kwargs = self.client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["response_format"] == "verbose_json"

    def test_missing_duration_is_unknown(self, caplog):
        self.client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="Hi"))
        transcriber = OpenAITranscriber("gpt-4o-transcribe", client=self.client)

        result = asyncio.run(transcriber.transcribe(self.audio))
        assert result.duration_seconds is None
        assert "reported no duration" in caplog.text
        assert self.client.audio.transcriptions.create.call_args.kwargs["response_format"] == "json"

    def test_missing_file(self):
        transcriber = OpenAITranscriber(client=self.client)
        with pytest.raises(TranscriptionError, match="not found"):
            asyncio.run(transcriber.transcribe(Path(self.temp_dir) / "missing.m4a"))

    def test_oversized_file(self):
        with open(self.audio, "wb") as f:
            f.truncate(MAX_TRANSCRIPTION_BYTES + 1)
        transcriber = OpenAITranscriber(client=self.client)

        with pytest.raises(TranscriptionError, match="25MB limit"):
            asyncio.run(transcriber.transcribe(self.audio))
        self.client.audio.transcriptions.create.assert_not_called()

    def test_empty_text_is_an_error(self):
        self.client.audio.transcriptions.create = AsyncMock(return_value=SimpleNamespace(text="  "))
        transcriber = OpenAITranscriber(client=self.client)

        with pytest.raises(TranscriptionError, match="no text"):
            asyncio.run(transcriber.transcribe(self.audio))

    def test_openai_error_becomes_transcription_error(self):
        self.client.audio.transcriptions.create = AsyncMock(side_effect=OpenAIError("bad audio"))
        transcriber = OpenAITranscriber(client=self.client)

        with pytest.raises(TranscriptionError, match="bad audio"):
            asyncio.run(transcriber.transcribe(self.audio))


class TestPexelsPhotoSearch:
    """Test the stock photo adapter against a mocked HTTP transport."""

    PHOTO = {
        "id": 7,
        "url": "https://www.pexels.com/photo/7/",
        "photographer": "Lin",
        "src": {"original": "o.jpg", "medium": "m.jpg", "tiny": "t.jpg"},
    }

    def _search(self, handler, api_key="key-123"):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return PexelsPhotoSearch(api_key=api_key, client=client)

    def test_search_success(self):
        seen = {}

        def handler(request):
            seen["request"] = request
            return httpx.Response(200, json={"photos": [self.PHOTO]})

        photos = asyncio.run(self._search(handler).search(" servers ", 4))

        assert len(photos) == 1
        assert photos[0].id == 7
        assert photos[0].photographer == "Lin"
        assert photos[0].src == {"original": "o.jpg", "medium": "m.jpg"}

        request = seen["request"]
        assert request.headers["Authorization"] == "key-123"
        assert request.url.path == "/v1/search"
        assert request.url.params["query"] == "servers"
        assert request.url.params["per_page"] == "4"
        assert request.url.params["orientation"] == "landscape"

    def test_missing_key_is_provider_error(self):
        search = self._search(lambda request: httpx.Response(200, json={}), api_key="")
        with pytest.raises(ProviderError, match="PEXELS_API_KEY"):
            asyncio.run(search.search("servers"))

    def test_http_error_becomes_provider_error(self):
        search = self._search(lambda request: httpx.Response(429, json={"error": "rate limited"}))
        with pytest.raises(ProviderError, match="HTTP 429") as exc_info:
            asyncio.run(search.search("servers"))
        assert exc_info.value.provider == "pexels"

    def test_network_error_becomes_provider_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(ProviderError, match="connection refused"):
            asyncio.run(self._search(handler).search("servers"))

    def test_empty_query_rejected(self):
        with pytest.raises(ValidationError):
            asyncio.run(self._search(lambda request: httpx.Response(200)).search("  "))


class FakeProcess:
    """Stands in for an asyncio subprocess running yt-dlp."""

    def __init__(self, returncode=0, stderr=b"", on_run=None, hang=False):
        self.returncode = returncode
        self.stderr = stderr
        self.on_run = on_run
        self.hang = hang
        self.killed = False

    async def communicate(self):
        if self.hang:
            await asyncio.sleep(10)
        if self.on_run:
            self.on_run()
        return b"", self.stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


class TestYtDlpDownloader:
    """Test the reel downloader with the subprocess boundary mocked."""

    URL = "https://www.instagram.com/reel/C9xYz123/"

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.downloader = YtDlpDownloader(self.temp_dir, timeout=0.05)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _spawn(self, process, write_output=True):
        """create_subprocess_exec replacement that writes the output file."""
        async def spawn(*args, **kwargs):
            template = args[list(args).index("-o") + 1]
            output = template.replace("%(ext)s", "m4a")
            if write_output:
                process.on_run = lambda: Path(output).write_bytes(b"audio")
            self.command = args
            return process
        return spawn

    @pytest.mark.parametrize("url,reel_id", [
        ("https://www.instagram.com/reel/C9xYz123/", "C9xYz123"),
        ("https://instagram.com/reels/AbC-_9/?igsh=1", "AbC-_9"),
        ("https://www.instagram.com/p/Post42/", "Post42"),
        ("https://www.youtube.com/watch?v=1", None),
    ])
    def test_extract_reel_id(self, url, reel_id):
        assert extract_reel_id(url) == reel_id

    def test_invalid_url(self):
        with pytest.raises(DownloadError, match="Not an Instagram reel URL"):
            asyncio.run(self.downloader.fetch("https://example.com/video.mp4"))

    @patch("content_forge.sdk.downloader.shutil.which", return_value=None)
    def test_missing_binary(self, mock_which):
        with pytest.raises(DownloadError, match="not installed"):
            asyncio.run(self.downloader.fetch(self.URL))

    @patch("content_forge.sdk.downloader.shutil.which", return_value="/usr/bin/yt-dlp")
    def test_fetch_success(self, mock_which):
        process = FakeProcess()
        with patch("content_forge.sdk.downloader.asyncio.create_subprocess_exec",
                   side_effect=self._spawn(process)):
            path = asyncio.run(self.downloader.fetch(self.URL))

        assert path.exists()
        assert path.parent == Path(self.temp_dir)
        assert path.name.startswith("reel-C9xYz123-")
        assert self.command[0] == "yt-dlp"
        assert self.command[-1] == self.URL

    @patch("content_forge.sdk.downloader.shutil.which", return_value="/usr/bin/yt-dlp")
    def test_non_zero_exit(self, mock_which):
        process = FakeProcess(returncode=1, stderr=b"ERROR: login required")
        with patch("content_forge.sdk.downloader.asyncio.create_subprocess_exec",
                   side_effect=self._spawn(process)):
            with pytest.raises(DownloadError, match="login required"):
                asyncio.run(self.downloader.fetch(self.URL))

        assert os.listdir(self.temp_dir) == []

    @patch("content_forge.sdk.downloader.shutil.which", return_value="/usr/bin/yt-dlp")
    def test_no_output_file(self, mock_which):
        process = FakeProcess()
        with patch("content_forge.sdk.downloader.asyncio.create_subprocess_exec",
                   side_effect=self._spawn(process, write_output=False)):
            with pytest.raises(DownloadError, match="no output file"):
                asyncio.run(self.downloader.fetch(self.URL))

    @patch("content_forge.sdk.downloader.shutil.which", return_value="/usr/bin/yt-dlp")
    def test_timeout_kills_process(self, mock_which):
        process = FakeProcess(hang=True)
        with patch("content_forge.sdk.downloader.asyncio.create_subprocess_exec",
                   side_effect=self._spawn(process, write_output=False)):
            with pytest.raises(DownloadError, match="timed out"):
                asyncio.run(self.downloader.fetch(self.URL))

        assert process.killed
