"""
Tests for job orchestration: budget gating, cost recording, fallbacks and
cleanup, using in-memory providers against a real SQLite ledger.
"""

import asyncio
import os
import shutil
import tempfile
import threading
from datetime import datetime
from decimal import Decimal
from pathlib import Path

import pytest
from fakes import (
    SCORES_JSON,
    BlockingTextGenerator,
    FakeDownloader,
    FakeImageGenerator,
    FakeTextGenerator,
    FakeTranscriber,
    provider_error,
)

from content_forge.config.loader import AppConfig, BudgetConfig, ProviderConfig, StorageConfig
from content_forge.container import build_services
from content_forge.core.errors import PersistenceError
from content_forge.core.jobs import (
    ESTIMATED_REEL_SECONDS,
    ImprovePostRequest,
    InfographicRequest,
    PostAnalysisRequest,
    ReelAnalysisRequest,
    TextGenerationJob,
    TextGenerationRequest,
    VideoUploadRequest,
    parse_post_scores,
)
from content_forge.core.pricing import IMAGE_GENERATION_COST, transcription_cost
from content_forge.core.reporter import JobReporter
from content_forge.storage.models import CostEntry, Service

REEL_URL = "https://www.instagram.com/reel/C9xYz123/"


def run_job(job, request):
    """Run a job to completion and collect every delivered event."""
    async def scenario():
        reporter = JobReporter()
        artifact_id = await job.run(request, reporter)
        events = [event async for event in reporter.events()]
        return artifact_id, reporter, events

    return asyncio.run(scenario())


def assert_well_formed(events):
    assert events[0].step == "start"
    assert events[0].progress == 0
    progress = [e.progress for e in events]
    assert progress == sorted(progress)
    assert events[-1].step in ("complete", "error")
    assert sum(1 for e in events if e.is_terminal) == 1


class _JobTestBase:

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.config = AppConfig(
            budget=BudgetConfig(monthly=Decimal("10.00"), alert_threshold=Decimal("8.00")),
            storage=StorageConfig(
                db_path=os.path.join(self.temp_dir, "test.db"),
                artifacts_dir=os.path.join(self.temp_dir, "artifacts"),
                temp_dir=os.path.join(self.temp_dir, "tmp"),
            ),
            providers=ProviderConfig(),
        )
        self.text = FakeTextGenerator()
        self.image = FakeImageGenerator()
        self.transcriber = FakeTranscriber()
        self.downloader = FakeDownloader(self.config.storage.temp_dir)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def services(self):
        return build_services(
            self.config,
            text_generator=self.text,
            image_generator=self.image,
            transcriber=self.transcriber,
            downloader=self.downloader,
        )

    @staticmethod
    def spend(services, cost):
        services.ledger.append(CostEntry(
            service=Service.TEXT_GEN,
            operation="earlier_post",
            cost=Decimal(cost),
            timestamp=datetime.now(),
        ))


class TestTextGenerationJob(_JobTestBase):

    def test_success_records_one_entry_and_artifact(self):
        services = self.services()
        artifact_id, reporter, events = run_job(
            services.text_job, TextGenerationRequest(topic="RAG pipelines")
        )

        assert_well_formed(events)
        assert events[-1].step == "complete"
        assert artifact_id is not None

        entries = services.ledger.recent()
        assert len(entries) == 1
        entry = entries[0]
        assert entry.service == Service.TEXT_GEN
        assert entry.operation == "generate_post"
        assert entry.related_job_id == reporter.job_id
        assert entry.tokens_used == 500
        # 200 prompt + 300 completion tokens of gpt-4o-mini, rounded up
        assert entry.cost == Decimal("0.0003")
        assert entry.metadata["model"] == "gpt-4o-mini"

        artifact = services.artifacts.get_artifact(artifact_id)
        assert artifact.content == "Generated LinkedIn post"
        assert artifact.job_id == reporter.job_id
        assert artifact.ai_cost == Decimal("0.0003")
        assert artifact.source_type == "ai_research"

        payload = events[-1].payload
        assert payload["artifact"]["id"] == artifact_id
        assert Decimal(payload["cost"]) == Decimal("0.0003")

        logs = services.process_log.recent()
        assert logs[0].process_type == "ai_post"
        assert logs[0].status == "success"

    def test_budget_denial_makes_no_external_call(self):
        services = self.services()
        self.spend(services, "9.99")

        artifact_id, _, events = run_job(services.text_job, TextGenerationRequest(topic="RAG"))

        assert artifact_id is None
        assert_well_formed(events)
        assert events[-1].step == "error"
        assert "$9.99/$10.00" in events[-1].message
        assert self.text.prompts == []
        assert len(services.ledger.recent()) == 1

    def test_validation_error_before_any_call(self):
        services = self.services()
        _, _, events = run_job(services.text_job, TextGenerationRequest(topic="   "))

        assert events[-1].step == "error"
        assert "topic is required" in events[-1].message
        assert self.text.prompts == []

    def test_provider_error_records_nothing_and_job_is_reusable(self):
        self.text.error = provider_error()
        services = self.services()

        artifact_id, _, events = run_job(services.text_job, TextGenerationRequest(topic="RAG"))
        assert artifact_id is None
        assert events[-1].step == "error"
        assert "Rate limit exceeded" in events[-1].message
        assert services.ledger.recent() == []
        assert services.process_log.recent()[0].status == "error"

        self.text.error = None
        artifact_id, _, events = run_job(services.text_job, TextGenerationRequest(topic="RAG"))
        assert events[-1].step == "complete"
        assert artifact_id is not None

    def test_persistence_failure_fails_job_but_keeps_cost(self):
        services = self.services()

        class BrokenStore:
            def create_artifact(self, content, metadata=None):
                raise PersistenceError("disk full")

            def update_artifact(self, artifact_id, fields):
                raise PersistenceError("disk full")

        job = TextGenerationJob(
            self.text,
            ledger=services.ledger,
            budget=services.budget,
            artifacts=BrokenStore(),
        )
        artifact_id, _, events = run_job(job, TextGenerationRequest(topic="RAG"))

        assert artifact_id is None
        assert events[-1].step == "error"
        assert "disk full" in events[-1].message
        assert len(services.ledger.recent()) == 1

    def test_process_log_failure_is_swallowed(self):
        services = self.services()

        class BrokenLog:
            def add(self, log):
                raise PersistenceError("log table locked")

        job = TextGenerationJob(
            self.text,
            ledger=services.ledger,
            budget=services.budget,
            artifacts=services.artifacts,
            process_log=BrokenLog(),
        )
        _, _, events = run_job(job, TextGenerationRequest(topic="RAG"))
        assert events[-1].step == "complete"

    def test_storage_calls_run_off_the_event_loop(self):
        services = self.services()
        threads = {}

        class RecordingLog:
            def add(self, log):
                threads["log"] = threading.get_ident()

        can_afford = services.budget.can_afford

        def recording_can_afford(amount):
            threads["budget"] = threading.get_ident()
            return can_afford(amount)

        services.budget.can_afford = recording_can_afford
        job = TextGenerationJob(
            self.text,
            ledger=services.ledger,
            budget=services.budget,
            artifacts=services.artifacts,
            process_log=RecordingLog(),
        )
        _, _, events = run_job(job, TextGenerationRequest(topic="RAG"))

        assert events[-1].step == "complete"
        assert set(threads) == {"budget", "log"}
        assert threading.get_ident() not in threads.values()

    def test_reporter_closed_after_job(self):
        services = self.services()
        _, reporter, _ = run_job(services.text_job, TextGenerationRequest(topic="RAG"))
        assert reporter.closed
        assert reporter.finished


class TestReelAnalysisJob(_JobTestBase):

    def test_transcribes_and_records_both_calls(self):
        services = self.services()
        artifact_id, reporter, events = run_job(
            services.reel_job, ReelAnalysisRequest(video_url=REEL_URL)
        )

        assert_well_formed(events)
        assert events[-1].step == "complete"
        assert events[-1].payload["source"] == "transcription"
        assert "Transcribed reel audio" in self.text.prompts[0]

        entries = {e.service: e for e in services.ledger.recent()}
        assert set(entries) == {Service.TRANSCRIPTION, Service.TEXT_GEN}
        assert entries[Service.TRANSCRIPTION].cost == transcription_cost(90.0)
        assert all(e.related_job_id == reporter.job_id for e in entries.values())

        artifact = services.artifacts.get_artifact(artifact_id)
        assert artifact.source_type == "instagram"
        assert artifact.source_data["videoUrl"] == REEL_URL

    def test_temp_file_removed_after_success(self):
        services = self.services()
        run_job(services.reel_job, ReelAnalysisRequest(video_url=REEL_URL))

        assert len(self.downloader.fetched) == 1
        assert not self.downloader.fetched[0].exists()

    def test_transcription_failure_without_description(self):
        self.transcriber.fail = True
        services = self.services()

        artifact_id, _, events = run_job(services.reel_job, ReelAnalysisRequest(video_url=REEL_URL))

        assert artifact_id is None
        assert_well_formed(events)
        assert events[-1].step == "error"
        assert "Whisper quota exceeded" in events[-1].message
        assert [e for e in services.ledger.recent() if e.service == Service.TRANSCRIPTION] == []
        assert self.text.prompts == []
        assert not self.downloader.fetched[0].exists()

    def test_transcription_failure_falls_back_to_description(self):
        self.transcriber.fail = True
        services = self.services()

        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(
            video_url=REEL_URL,
            description="A reel about vector databases",
        ))

        assert events[-1].step == "complete"
        assert events[-1].payload["source"] == "description"
        assert "vector databases" in self.text.prompts[0]
        assert [e.service for e in services.ledger.recent()] == [Service.TEXT_GEN]
        assert any(e.payload and "warning" in e.payload for e in events)

    def test_download_failure_falls_back_to_description(self):
        self.downloader.fail = True
        services = self.services()

        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(
            video_url=REEL_URL,
            description="A reel about vector databases",
        ))

        assert events[-1].step == "complete"
        assert self.transcriber.calls == 0

    def test_download_failure_without_description(self):
        self.downloader.fail = True
        services = self.services()

        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(video_url=REEL_URL))
        assert events[-1].step == "error"
        assert "Reel is private" in events[-1].message

    def test_description_only(self):
        services = self.services()
        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(description="Agents 101"))

        assert events[-1].step == "complete"
        assert self.downloader.fetched == []
        assert self.transcriber.calls == 0

    def test_requires_url_or_description(self):
        services = self.services()
        _, _, events = run_job(services.reel_job, ReelAnalysisRequest())
        assert events[-1].step == "error"

        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(video_url="https://example.com/v.mp4"))
        assert events[-1].step == "error"
        assert "Instagram" in events[-1].message

    def test_transcription_cost_kept_when_analysis_fails(self):
        self.text.error = provider_error("Model overloaded")
        services = self.services()

        _, reporter, events = run_job(services.reel_job, ReelAnalysisRequest(video_url=REEL_URL))

        assert events[-1].step == "error"
        entries = services.ledger.recent()
        assert [e.service for e in entries] == [Service.TRANSCRIPTION]
        assert entries[0].related_job_id == reporter.job_id
        assert Decimal(events[-1].payload["cost"]) == entries[0].cost

    def test_unknown_duration_bills_estimated_length(self):
        self.transcriber.duration_seconds = None
        services = self.services()

        _, _, events = run_job(services.reel_job, ReelAnalysisRequest(video_url=REEL_URL))

        assert events[-1].step == "complete"
        entry = next(e for e in services.ledger.recent() if e.service == Service.TRANSCRIPTION)
        assert entry.cost == transcription_cost(ESTIMATED_REEL_SECONDS)
        assert entry.cost > 0
        assert entry.metadata["durationEstimated"] is True
        assert entry.metadata["durationSeconds"] == ESTIMATED_REEL_SECONDS

    def test_detached_subscriber_does_not_stop_the_job(self):
        services = self.services()

        async def scenario():
            reporter = JobReporter()
            reporter.start("job-detached")
            reporter.detach()
            artifact_id = await services.reel_job.run(ReelAnalysisRequest(video_url=REEL_URL), reporter)
            return artifact_id, reporter

        artifact_id, reporter = asyncio.run(scenario())

        assert reporter.history[-1].step == "complete"
        assert reporter.closed
        artifact = services.artifacts.get_artifact(artifact_id)
        assert artifact.job_id == "job-detached"

        entries = {e.service: e for e in services.ledger.recent()}
        assert set(entries) == {Service.TRANSCRIPTION, Service.TEXT_GEN}
        assert all(e.related_job_id == "job-detached" for e in entries.values())
        assert artifact.ai_cost == sum(e.cost for e in entries.values())
        assert not self.downloader.fetched[0].exists()

    def test_cancelled_job_keeps_incurred_cost(self):
        self.text = BlockingTextGenerator()
        services = self.services()
        reporter = JobReporter()

        async def scenario():
            task = asyncio.create_task(
                services.reel_job.run(ReelAnalysisRequest(video_url=REEL_URL), reporter)
            )
            await self.text.started.wait()
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        entries = services.ledger.recent()
        assert [e.service for e in entries] == [Service.TRANSCRIPTION]
        assert entries[0].related_job_id == reporter.job_id

        assert reporter.history[-1].step == "error"
        assert reporter.history[-1].message == "Job cancelled"
        assert reporter.history[-1].payload["cost"] == str(entries[0].cost)
        assert reporter.closed
        assert services.process_log.recent()[0].status == "error"
        assert not self.downloader.fetched[0].exists()


class TestVideoUploadJob(_JobTestBase):

    def _upload(self, data=b"video-bytes", name="clip.mp4"):
        os.makedirs(self.config.storage.temp_dir, exist_ok=True)
        path = Path(self.config.storage.temp_dir) / f"upload-{name}"
        path.write_bytes(data)
        return path

    def test_transcribes_upload_and_deletes_it(self):
        services = self.services()
        path = self._upload()

        artifact_id, _, events = run_job(services.upload_job, VideoUploadRequest(
            file_path=path, filename="clip.mp4",
        ))

        assert_well_formed(events)
        assert events[-1].step == "complete"
        assert events[-1].payload["source"] == "transcription"
        assert not path.exists()

        operations = sorted(e.operation for e in services.ledger.recent())
        assert operations == ["analyze_upload", "transcribe_audio"]

        artifact = services.artifacts.get_artifact(artifact_id)
        assert artifact.source_type == "instagram"
        assert artifact.source_data["fileName"] == "clip.mp4"
        assert services.process_log.recent()[0].process_type == "video_upload"

    def test_transcription_failure_falls_back_to_description(self):
        self.transcriber.fail = True
        services = self.services()
        path = self._upload()

        _, _, events = run_job(services.upload_job, VideoUploadRequest(
            file_path=path, filename="clip.mp4", description="Demo of our agent platform",
        ))

        assert events[-1].step == "complete"
        assert events[-1].payload["source"] == "description"
        assert [e.service for e in services.ledger.recent()] == [Service.TEXT_GEN]
        assert not path.exists()

    def test_empty_upload_rejected_and_deleted(self):
        services = self.services()
        path = self._upload(data=b"")

        _, _, events = run_job(services.upload_job, VideoUploadRequest(
            file_path=path, filename="clip.mp4",
        ))

        assert events[-1].step == "error"
        assert "empty" in events[-1].message
        assert self.transcriber.calls == 0
        assert not path.exists()


class TestPostAnalysisJob(_JobTestBase):

    def test_scores_post_without_storing_artifact(self):
        self.text.content = SCORES_JSON
        services = self.services()

        artifact_id, _, events = run_job(
            services.analysis_job, PostAnalysisRequest(post="I shipped an agent in 3 days.")
        )

        assert_well_formed(events)
        assert artifact_id is None
        assert services.artifacts.list_artifacts() == []

        analysis = events[-1].payload["analysis"]
        assert analysis["scores"]["value"] == 9
        assert analysis["overallScore"] == 6.9
        assert analysis["suggestions"] == ["Open with a number"]
        assert "artifact" not in events[-1].payload

        entries = services.ledger.recent()
        assert [e.operation for e in entries] == ["analyze_post"]
        assert Decimal(events[-1].payload["cost"]) == entries[0].cost
        assert services.process_log.recent()[0].process_type == "post_analysis"

    def test_invalid_json_fails_but_keeps_cost(self):
        self.text.content = "Great post!"
        services = self.services()

        _, _, events = run_job(services.analysis_job, PostAnalysisRequest(post="Hello"))

        assert events[-1].step == "error"
        assert "invalid JSON" in events[-1].message
        assert len(services.ledger.recent()) == 1

    def test_requires_post(self):
        services = self.services()
        _, _, events = run_job(services.analysis_job, PostAnalysisRequest(post="  "))
        assert events[-1].step == "error"
        assert self.text.prompts == []

    def test_missing_scores_count_as_zero(self):
        analysis = parse_post_scores('{"scores": {"value": 9, "hashtags": "n/a", "length": 14}}')
        assert analysis["scores"]["readability"] == 0
        assert analysis["scores"]["hashtags"] == 0
        assert analysis["scores"]["length"] == 10
        assert analysis["overallScore"] == 2.4
        assert analysis["suggestions"] == []


class TestInfographicJob(_JobTestBase):

    def test_generated_image_saved_and_billed(self):
        services = self.services()
        artifact_id, _, events = run_job(services.infographic_job, InfographicRequest(
            post_content="RAG vs fine-tuning\n- Retrieval keeps data fresh\n- Fine-tuning bakes it in",
        ))

        assert_well_formed(events)
        payload = events[-1].payload
        assert payload["artifact"]["imageSource"] == "generated"
        assert payload["artifact"]["imageUrl"] == f"/api/artifacts/{artifact_id}/image"
        assert payload["template"] == "comparison"

        entries = services.ledger.recent()
        assert len(entries) == 1
        assert entries[0].service == Service.IMAGE_GEN
        assert entries[0].cost == IMAGE_GENERATION_COST

        artifact = services.artifacts.get_artifact(artifact_id)
        assert artifact.image_source == "generated"
        assert Path(artifact.image_path).suffix == ".png"
        assert Path(artifact.image_path).read_bytes() == self.image.image_bytes

    def test_no_image_data_uses_fallback_at_zero_cost(self):
        self.image.image_bytes = None
        services = self.services()

        artifact_id, _, events = run_job(services.infographic_job, InfographicRequest(
            post_content="3 steps to ship agents\n1. Scope\n2. Evaluate\n3. Monitor",
        ))

        assert events[-1].step == "complete"
        payload = events[-1].payload
        assert payload["artifact"]["imageSource"] == "fallback"
        assert payload["artifact"]["id"] == artifact_id
        assert Decimal(payload["cost"]) == Decimal("0")
        assert services.ledger.recent() == []

        artifact = services.artifacts.get_artifact(artifact_id)
        image_path = Path(artifact.image_path)
        assert image_path.suffix == ".svg"
        assert image_path.read_text(encoding="utf-8").startswith("<?xml")

    def test_provider_error_uses_fallback(self):
        self.image.error = provider_error("Content policy violation")
        services = self.services()

        _, _, events = run_job(services.infographic_job, InfographicRequest(post_content="Hello"))

        assert events[-1].step == "complete"
        assert events[-1].payload["imageSource"] == "fallback"
        assert services.ledger.recent() == []

    def test_image_bytes_never_in_events(self):
        services = self.services()
        _, _, events = run_job(services.infographic_job, InfographicRequest(post_content="Hello"))

        image_event = next(e for e in events if e.step == "image" and e.progress == 80)
        assert image_event.payload["image"] == {
            "elided": "bytes",
            "size": len(self.image.image_bytes),
        }

    def test_topic_overrides_headline(self):
        services = self.services()
        _, _, events = run_job(services.infographic_job, InfographicRequest(
            post_content="Some post", topic="Custom headline",
        ))
        style_event = next(e for e in events if e.step == "style" and e.payload)
        assert style_event.payload["headline"] == "Custom headline"


class TestImprovePostJob(_JobTestBase):

    def test_updates_existing_artifact(self):
        services = self.services()
        artifact_id = services.artifacts.create_artifact("Original post")
        self.text.content = "Improved post"

        result_id, _, events = run_job(services.improve_job, ImprovePostRequest(
            original_post="Original post",
            feedback_points=["Shorter hook", "Add a metric"],
            artifact_id=artifact_id,
        ))

        assert events[-1].step == "complete"
        assert result_id == artifact_id
        assert services.artifacts.get_artifact(artifact_id).content == "Improved post"
        assert "- Shorter hook" in self.text.prompts[0]
        assert services.ledger.recent()[0].operation == "improve_post"

    def test_creates_artifact_without_id(self):
        services = self.services()
        result_id, _, _ = run_job(services.improve_job, ImprovePostRequest(
            original_post="Original", feedback_points=["Shorter"],
        ))
        assert services.artifacts.get_artifact(result_id).content == "Generated LinkedIn post"

    def test_blank_feedback_points_are_dropped(self):
        services = self.services()
        _, _, events = run_job(services.improve_job, ImprovePostRequest(
            original_post="Original", feedback_points=["  Shorter hook ", "", "   "],
        ))

        assert events[-1].step == "complete"
        bullets = [line for line in self.text.prompts[0].splitlines() if line.startswith("-")]
        assert bullets == ["- Shorter hook"]
        assert services.ledger.recent()[0].metadata["feedbackPoints"] == 1
        assert services.process_log.recent()[0].details == "Applied 1 feedback points"

    def test_requires_feedback(self):
        services = self.services()
        _, _, events = run_job(services.improve_job, ImprovePostRequest(original_post="Original"))
        assert events[-1].step == "error"
        assert "feedback" in events[-1].message
        assert self.text.prompts == []

    def test_missing_artifact_fails_but_records_cost(self):
        services = self.services()
        _, _, events = run_job(services.improve_job, ImprovePostRequest(
            original_post="Original", feedback_points=["Shorter"], artifact_id=404,
        ))
        assert events[-1].step == "error"
        assert "not found" in events[-1].message
        assert len(services.ledger.recent()) == 1
