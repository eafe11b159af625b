import json
from dataclasses import replace

import pytest
from conftest import InMemoryBatchJobsRepo, RecordingIngestor, election_payload

from app.batch.contracts import ProviderJobSnapshot
from app.batch.errors import AdmissionRejectedError, BatchJobNotFoundError, BatchSubmissionError, IngestionError, InvalidBatchInputError, InvalidTransitionError, PollTimeoutError, ProviderJobFailedError, ProviderUnavailableError
from app.batch.models import BatchGroupStatus, BatchJobStatus
from app.batch.pipeline import BatchPipeline, BatchSubmission, parse_structured
from app.batch.reconciler import EMPTY_RESULT_ERROR


def _groups(*keys: str) -> list[dict]:
  return [{"key": key, "rows": [{"firstName": key.upper(), "lastName": "Smith", "municipality": "Springfield", "state": "IL"}]} for key in keys]


async def _submitted(pipeline: BatchPipeline, repo: InMemoryBatchJobsRepo, *keys: str):
  result = await pipeline.submit(BatchSubmission(groups=_groups(*keys), uploader_email="ops@example.com"))
  return await repo.get_job(result.job_id)


@pytest.mark.anyio
async def test_submit_persists_job_and_starts_analyze(pipeline, repo, provider):
  result = await pipeline.submit(BatchSubmission(groups=_groups("a", "b")))

  assert result.status == BatchJobStatus.ANALYZE_SUBMITTED
  assert result.analyze_job_name == "batches/fake-1"
  assert result.analyze_mode == "inline"
  assert result.group_count == 2
  assert result.token_estimate > 0
  assert result.display_name == "batch-20260301-120000"
  assert result.mock is False
  assert provider.created[0]["model"] == "primary-model"
  assert provider.created[0]["display_name"] == "batch-20260301-120000-analyze"
  assert len(provider.created[0]["src"]) == 2

  job = await repo.get_job(result.job_id)
  assert job.analyze_model == "primary-model"
  assert job.analyze_fallback_used is False
  assert [group.status for group in job.groups] == [BatchGroupStatus.ANALYZE_RUNNING] * 2
  assert sum(group.analyze_token_estimate for group in job.groups) == job.estimated_tokens


@pytest.mark.anyio
async def test_submit_rejects_missing_groups_and_bad_schema(pipeline, repo):
  with pytest.raises(InvalidBatchInputError, match="At least one group is required"):
    await pipeline.submit(BatchSubmission(groups=[]))
  with pytest.raises(InvalidBatchInputError, match="responseSchema"):
    await pipeline.submit(BatchSubmission(groups=_groups("a"), response_schema=["not", "an", "object"]))

  assert repo.jobs == {}


@pytest.mark.anyio
async def test_custom_response_schema_is_converted_and_stored(pipeline, repo):
  result = await pipeline.submit(BatchSubmission(groups=_groups("a"), response_schema={"type": "object", "properties": {"x": {"type": "string"}}}))

  assert result.response_schema == {"type": "OBJECT", "properties": {"x": {"type": "STRING"}}}
  assert (await repo.get_job(result.job_id)).response_schema == result.response_schema


@pytest.mark.anyio
async def test_admission_rejection_persists_nothing(repo, settings, provider, clock):
  pipeline = BatchPipeline(repo=repo, settings=replace(settings, max_active_jobs=1), provider=provider, clock=clock)
  await pipeline.submit(BatchSubmission(groups=_groups("a")))

  with pytest.raises(AdmissionRejectedError, match="Too many active batch jobs"):
    await pipeline.submit(BatchSubmission(groups=_groups("b")))

  assert len(repo.jobs) == 1
  assert len(provider.created) == 1


@pytest.mark.anyio
async def test_submission_failure_fails_the_job_and_reports_its_id(pipeline, repo, provider):
  provider.failing_models = {"primary-model": RuntimeError("quota"), "fallback-model": RuntimeError("overloaded")}

  with pytest.raises(BatchSubmissionError) as exc_info:
    await pipeline.submit(BatchSubmission(groups=_groups("a")))

  job = await repo.get_job(exc_info.value.job_id)
  assert job.status == BatchJobStatus.FAILED
  assert "primary-model" in job.analyze_error
  assert "fallback-model" in job.analyze_error
  assert job.last_processed_at is not None


@pytest.mark.anyio
async def test_fallback_model_is_recorded(pipeline, repo, provider):
  provider.failing_models = {"primary-model": RuntimeError("quota")}

  job = await _submitted(pipeline, repo, "a")

  assert job.analyze_model == "fallback-model"
  assert job.analyze_fallback_used is True


@pytest.mark.anyio
async def test_group_failures_do_not_fail_the_job(pipeline, repo, provider, ingestor):
  job = await _submitted(pipeline, repo, "a", "b", "c")
  provider.complete_inline("batches/fake-1", ["analysis A", {"message": "blocked"}, "analysis C"])

  job = await pipeline.poll_stage(job, "analyze")

  assert job.status == BatchJobStatus.ANALYZE_COMPLETED
  assert [group.status for group in job.groups] == [BatchGroupStatus.ANALYZE_COMPLETED, BatchGroupStatus.ANALYZE_FAILED, BatchGroupStatus.ANALYZE_COMPLETED]
  assert job.groups[1].analyze_error == "blocked"

  job = await pipeline.submit_structure(job)

  assert job.status == BatchJobStatus.STRUCTURE_SUBMITTED
  assert provider.created[1]["display_name"].endswith("-structure")
  assert len(provider.created[1]["src"]) == 2
  assert [group.status for group in job.groups] == [BatchGroupStatus.STRUCTURE_RUNNING, BatchGroupStatus.ANALYZE_FAILED, BatchGroupStatus.STRUCTURE_RUNNING]
  assert job.groups[0].structure_token_estimate > 0

  provider.complete_inline("batches/fake-2", [election_payload("Springfield Mayor", candidates=2), "not json"])
  job = await pipeline.poll_stage(job, "structure")

  assert job.status == BatchJobStatus.STRUCTURE_COMPLETED
  assert job.groups[0].structured["elections"][0]["election"]["title"] == "Springfield Mayor"
  assert job.groups[2].status == BatchGroupStatus.STRUCTURE_FAILED
  assert job.groups[2].structure_error.startswith("Invalid JSON")

  job = await pipeline.queue_ingestion(job)
  assert job.status == BatchJobStatus.INGEST_PENDING

  job = await pipeline.run_ingestion(job)

  assert job.status == BatchJobStatus.COMPLETED
  assert job.notes == {"ingestResults": [{"electionId": 1, "title": "Springfield Mayor", "candidates": 2}]}
  assert [group.status for group in job.groups] == [BatchGroupStatus.INGEST_COMPLETED, BatchGroupStatus.ANALYZE_FAILED, BatchGroupStatus.STRUCTURE_FAILED]
  assert ingestor.calls[0]["hidden"] is False
  assert ingestor.calls[0]["uploaded_by"] == "ops@example.com"
  assert ingestor.calls[0]["job_id"] == job.id


@pytest.mark.anyio
async def test_job_fails_when_every_analyze_group_fails(pipeline, repo, provider):
  job = await _submitted(pipeline, repo, "a", "b")
  provider.complete_inline("batches/fake-1", [{"message": "blocked"}, None])

  job = await pipeline.poll_stage(job, "analyze")

  assert job.status == BatchJobStatus.FAILED
  assert job.analyze_error == "No analyze results available"
  assert [group.status for group in job.groups] == [BatchGroupStatus.ANALYZE_FAILED] * 2
  assert job.groups[1].analyze_error == EMPTY_RESULT_ERROR


@pytest.mark.anyio
async def test_job_fails_when_no_structure_output_parses(pipeline, repo, provider):
  job = await _submitted(pipeline, repo, "a")
  provider.complete_inline("batches/fake-1", ["analysis"])
  job = await pipeline.submit_structure(await pipeline.poll_stage(job, "analyze"))
  provider.complete_inline("batches/fake-2", ["[1, 2, 3]"])

  job = await pipeline.poll_stage(job, "structure")

  assert job.status == BatchJobStatus.FAILED
  assert job.structure_error == "Structure job produced no valid output"
  assert job.groups[0].structure_error == "Invalid JSON: expected an object, got list"


@pytest.mark.anyio
async def test_ingestion_without_elections_fails_the_job(pipeline, repo, provider, ingestor):
  job = await _submitted(pipeline, repo, "a")
  provider.complete_inline("batches/fake-1", ["analysis"])
  job = await pipeline.submit_structure(await pipeline.poll_stage(job, "analyze"))
  provider.complete_inline("batches/fake-2", [json.dumps({"elections": []})])
  job = await pipeline.queue_ingestion(await pipeline.poll_stage(job, "structure"))

  with pytest.raises(IngestionError):
    await pipeline.run_ingestion(job)

  stored = await repo.get_job(job.id)
  assert stored.status == BatchJobStatus.FAILED
  assert stored.ingest_error == "No structured elections available"
  assert ingestor.calls == []


@pytest.mark.anyio
async def test_ingestor_errors_fail_the_job(repo, settings, provider, clock):
  failing = RecordingIngestor(error=RuntimeError("db down"))
  pipeline = BatchPipeline(repo=repo, settings=replace(settings, environment="production"), provider=provider, ingestor=failing, clock=clock)
  job = await _submitted(pipeline, repo, "a")
  provider.complete_inline("batches/fake-1", ["analysis"])
  job = await pipeline.submit_structure(await pipeline.poll_stage(job, "analyze"))
  provider.complete_inline("batches/fake-2", [election_payload("Council")])
  job = await pipeline.queue_ingestion(await pipeline.poll_stage(job, "structure"))

  with pytest.raises(IngestionError, match="db down"):
    await pipeline.run_ingestion(job)

  stored = await repo.get_job(job.id)
  assert stored.status == BatchJobStatus.FAILED
  assert stored.ingest_error == "db down"
  assert failing.calls[0]["hidden"] is True


@pytest.mark.anyio
async def test_poll_touches_a_running_job(pipeline, repo, clock):
  job = await _submitted(pipeline, repo, "a")
  clock.advance(30)

  job = await pipeline.poll_stage(job, "analyze")

  assert job.status == BatchJobStatus.ANALYZE_SUBMITTED
  assert job.last_processed_at == clock.now


@pytest.mark.anyio
async def test_provider_failure_fails_the_stage(pipeline, repo, provider):
  job = await _submitted(pipeline, repo, "a")
  provider.set_state("batches/fake-1", "JOB_STATE_FAILED", error_message="quota exhausted")

  with pytest.raises(ProviderJobFailedError):
    await pipeline.poll_stage(job, "analyze")

  stored = await repo.get_job(job.id)
  assert stored.status == BatchJobStatus.FAILED
  assert "quota exhausted" in stored.analyze_error


@pytest.mark.anyio
async def test_stage_timeout_fails_a_running_job(pipeline, repo, clock):
  job = await _submitted(pipeline, repo, "a")
  clock.advance(3601)

  with pytest.raises(PollTimeoutError):
    await pipeline.poll_stage(job, "analyze")

  stored = await repo.get_job(job.id)
  assert stored.status == BatchJobStatus.FAILED
  assert "timed out after 3601s" in stored.analyze_error


@pytest.mark.anyio
async def test_stale_record_cannot_advance_twice(pipeline, repo, provider):
  stale = await _submitted(pipeline, repo, "a")
  provider.complete_inline("batches/fake-1", ["analysis"])
  await pipeline.poll_stage(stale, "analyze")

  with pytest.raises(InvalidTransitionError):
    await pipeline.complete_analyze(stale, provider.snapshots["batches/fake-1"])

  assert (await repo.get_job(stale.id)).status == BatchJobStatus.ANALYZE_COMPLETED


@pytest.mark.anyio
async def test_file_mode_results_reconcile_by_key(repo, settings, provider, clock):
  pipeline = BatchPipeline(repo=repo, settings=replace(settings, inline_limit_bytes=10), provider=provider, clock=clock)
  job = await _submitted(pipeline, repo, "a", "b")
  assert job.analyze_mode == "file"
  assert provider.uploads[0]["mime_type"] == "jsonl"

  provider.snapshots["batches/fake-1"] = ProviderJobSnapshot(name="batches/fake-1", state="JOB_STATE_SUCCEEDED", result_file_name="files/result-1")
  provider.files["files/result-1"] = b'{"key": "b", "response": {"text": "for b"}}\n{"key": "a", "response": {"text": "for a"}}\n'

  job = await pipeline.poll_stage(job, "analyze")

  assert [group.analyze_text for group in job.groups] == ["for a", "for b"]


@pytest.mark.anyio
async def test_failed_result_download_keeps_the_stage_submitted(repo, settings, provider, clock):
  pipeline = BatchPipeline(repo=repo, settings=replace(settings, inline_limit_bytes=10), provider=provider, clock=clock)
  job = await _submitted(pipeline, repo, "a", "b")
  provider.snapshots["batches/fake-1"] = ProviderJobSnapshot(name="batches/fake-1", state="JOB_STATE_SUCCEEDED", result_file_name="files/result-1")
  provider.files["files/result-1"] = b'{"key": "a", "response": {"text": "for a"}}\n{"key": "b", "response": {"text": "for b"}}\n'
  provider.download_errors.append(ConnectionError("connection reset by peer"))

  with pytest.raises(ProviderUnavailableError, match="connection reset by peer"):
    await pipeline.poll_stage(job, "analyze")

  stored = await repo.get_job(job.id)
  assert stored.status == BatchJobStatus.ANALYZE_SUBMITTED
  assert stored.analyze_error is None
  assert [group.status for group in stored.groups] == [BatchGroupStatus.ANALYZE_RUNNING] * 2

  job = await pipeline.poll_stage(stored, "analyze")

  assert job.status == BatchJobStatus.ANALYZE_COMPLETED
  assert [group.analyze_text for group in job.groups] == ["for a", "for b"]


@pytest.mark.anyio
async def test_unreachable_status_read_during_await_keeps_the_stage_submitted(pipeline, repo, provider):
  job = await _submitted(pipeline, repo, "a")
  provider.read_errors.append(TimeoutError("read timed out"))

  with pytest.raises(ProviderUnavailableError):
    await pipeline.await_stage(job, "analyze")

  assert (await repo.get_job(job.id)).status == BatchJobStatus.ANALYZE_SUBMITTED


@pytest.mark.anyio
async def test_drive_runs_a_job_to_completion(pipeline, repo, provider, ingestor):
  job = await _submitted(pipeline, repo, "a")
  provider.complete_inline("batches/fake-1", ["analysis"])
  provider.complete_inline("batches/fake-2", [election_payload("Driven")])

  job = await pipeline.drive(job.id)

  assert job.status == BatchJobStatus.COMPLETED
  assert len(ingestor.calls) == 1


@pytest.mark.anyio
async def test_drive_unknown_job(pipeline):
  with pytest.raises(BatchJobNotFoundError):
    await pipeline.drive("missing")


@pytest.mark.anyio
async def test_mock_mode_completes_synthetically(mock_pipeline, repo, ingestor):
  result = await mock_pipeline.submit(BatchSubmission(groups=_groups("a", "b")))

  assert result.mock is True
  assert result.status == BatchJobStatus.COMPLETED
  assert result.group_count == 2
  assert result.analyze_job_name == f"mock/analyze/{result.job_id}"

  job = await repo.get_job(result.job_id)
  assert job.notes == {"mock": True, "ingestResults": []}
  assert [group.status for group in job.groups] == [BatchGroupStatus.INGEST_COMPLETED] * 2
  assert isinstance(job.groups[0].structured["elections"], list)
  assert job.groups[0].structured["elections"][0]["candidates"][0]["name"] == "A Smith"
  assert repo.transitions == [(result.job_id, BatchJobStatus.PENDING_ANALYZE, BatchJobStatus.COMPLETED)]
  assert ingestor.calls == []


def test_parse_structured():
  assert parse_structured('{"elections": []}') == ({"elections": []}, None)
  value, error = parse_structured("{broken")
  assert value is None
  assert error.startswith("Invalid JSON: ")
