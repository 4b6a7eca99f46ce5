"""End-to-end execution of workflow definitions."""

import asyncio
import time
from pathlib import Path
from typing import Any

import pytest

from stepflow.engine import (
    ClassifiedError,
    DefinitionError,
    EngineConfig,
    LocalTaskClient,
    TaskInvocationClient,
    TraceEventKind,
    WorkflowRegistry,
    WorkflowRunner,
)
from stepflow.engine.secrets import EnvVarSecretProvider, SecretRedactor

TEMPLATES_DIR = Path(__file__).parent.parent / "src" / "stepflow" / "templates"


@pytest.fixture(scope="module")
def templates() -> WorkflowRegistry:
    registry = WorkflowRegistry()
    registry.load_from_directory(TEMPLATES_DIR)
    return registry


def _throttled(times: int, result: Any) -> Any:
    """Handler raising ThrottlingError ``times`` times before returning ``result``."""
    calls: list[Any] = []

    async def handler(payload):
        calls.append(payload)
        if len(calls) <= times:
            raise ClassifiedError("ThrottlingError", "Rate exceeded")
        return result

    handler.calls = calls  # type: ignore[attr-defined]
    return handler


def _copy_in_definition(make_definition, max_attempts: int):
    return make_definition(
        {
            "Copy in": {
                "Type": "Task",
                "Resource": "dmq-copy-photo",
                "Arguments": {"jobId": "{{ states.input.jobId }}", "direction": "driveToS3"},
                "Retry": [
                    {
                        "ErrorEquals": ["ThrottlingError"],
                        "IntervalSeconds": 1,
                        "MaxAttempts": max_attempts,
                        "BackoffRate": 2,
                        "JitterStrategy": "FULL",
                    }
                ],
                "Catch": [{"ErrorEquals": ["States.ALL"], "Next": "Copy in Fail"}],
                "Next": "Done",
            },
            "Copy in Fail": {
                "Type": "Fail",
                "Error": "CopyInFailed",
                "Cause": "{{ states.input.Cause }}",
            },
            "Done": {"Type": "Succeed"},
        }
    )


class TestRetryAndCatch:
    async def test_throttled_copy_in_recovers(
        self,
        runner: WorkflowRunner,
        task_client: LocalTaskClient,
        recording_sleep,
        make_definition,
    ) -> None:
        handler = _throttled(2, {"copied": True})
        task_client.register("dmq-copy-photo", handler)

        result = await runner.execute(_copy_in_definition(make_definition, 3), {"jobId": "j1"})

        assert result.succeeded
        assert result.output == {"copied": True}
        assert len(handler.calls) == 3
        assert recording_sleep.delays == [1, 2]
        attempts = result.trace.for_state("Copy in", TraceEventKind.TASK_ATTEMPT)
        assert [(e.attempt, e.error) for e in attempts] == [
            (1, "ThrottlingError"),
            (2, "ThrottlingError"),
            (3, None),
        ]

    async def test_exhausted_retries_go_to_catch(
        self, runner: WorkflowRunner, task_client: LocalTaskClient, make_definition
    ) -> None:
        handler = _throttled(2, {"copied": True})
        task_client.register("dmq-copy-photo", handler)

        result = await runner.execute(_copy_in_definition(make_definition, 2), {"jobId": "j1"})

        assert not result.succeeded
        assert result.error == "CopyInFailed"
        assert result.cause == "Rate exceeded"
        assert len(handler.calls) == 2
        assert result.trace.for_state("Copy in", TraceEventKind.STATE_CAUGHT)


class TestVideoDeliver:
    @pytest.fixture
    def handlers(self, task_client: LocalTaskClient) -> dict[str, list[Any]]:
        calls: dict[str, list[Any]] = {}

        def recorder(name: str, result: Any):
            async def handler(payload):
                calls.setdefault(name, []).append(payload)
                return result

            task_client.register(name, handler)

        recorder("video-copy-in", {"copied": True})
        recorder("ffmpeg-probe", {"duration": 93.4})
        recorder("srt-convert", {"events": 41})
        recorder("ffmpeg-burn", {"resultKey": "video/j1/result.mp4"})
        recorder("deliver-gsheet", {"row": 7})
        return calls

    async def test_delivers_to_spreadsheet(
        self, runner: WorkflowRunner, templates: WorkflowRegistry, handlers
    ) -> None:
        input = {
            "jobId": "j1",
            "driveFileId": "f1",
            "subtitlesDocId": "d1",
            "deliveryWorkflow": "googleSpreadsheet",
            "spreadsheetId": "s1",
        }
        result = await runner.execute(templates.get("video-deliver"), input)

        assert result.succeeded, result.cause
        assert result.output == {"row": 7}
        assert handlers["ffmpeg-burn"][0]["duration"] == 93.4
        assert handlers["ffmpeg-burn"][0]["subtitlesKey"] == "video/j1/subtitles.ass"
        assert handlers["deliver-gsheet"][0] == {
            "jobId": "j1",
            "spreadsheetId": "s1",
            "resultKey": "video/j1/result.mp4",
        }

    @pytest.mark.parametrize(
        "delivery, cause",
        [
            ({"deliveryWorkflow": "email"}, "Unsupported delivery workflow: email"),
            ({}, "Unsupported delivery workflow: null"),
        ],
    )
    async def test_unsupported_delivery_fails(
        self,
        runner: WorkflowRunner,
        templates: WorkflowRegistry,
        handlers,
        delivery: dict[str, str],
        cause: str,
    ) -> None:
        input = {"jobId": "j1", "driveFileId": "f1", "subtitlesDocId": "d1", **delivery}
        result = await runner.execute(templates.get("video-deliver"), input)

        assert result.error == "InvalidDeliveryWorkflow"
        assert result.cause == cause
        assert "deliver-gsheet" not in handlers


async def test_dmq_make_renders_every_variant(
    runner: WorkflowRunner, task_client: LocalTaskClient, templates: WorkflowRegistry
) -> None:
    made: list[dict[str, Any]] = []
    copied: list[dict[str, Any]] = []

    async def copy_photo(payload):
        copied.append(payload)
        return {"ok": True}

    async def make(payload):
        made.append(payload)
        return {"resultS3Key": payload["resultS3Key"]}

    task_client.register("dmq-copy-photo", copy_photo)
    task_client.register("dmq-maker", make)

    input = {
        "jobId": "j1",
        "text": "Hello",
        "font": "Open Sans",
        "sourceDriveFolderId": "src",
        "sourceDriveId": "drive",
        "destDriveFolderId": "dst",
        "date": "2024-05-01",
    }
    result = await runner.execute(templates.get("dmq-make"), input)

    assert result.succeeded, result.cause
    assert sorted(m["resultS3Key"] for m in made) == [
        "dmq/j1/result-square.png",
        "dmq/j1/result-vertical.png",
    ]
    assert {m["fontS3Key"] for m in made} == {"fonts/open_sans_bold.ttf"}
    copy_out_keys = sorted(c["s3Key"] for c in copied if c["direction"] == "s3ToDrive")
    assert copy_out_keys == ["dmq/j1/result-square.png", "dmq/j1/result-vertical.png"]
    assert copied[0]["s3Key"] == "dmq/j1/request"


class TestDmqPublish:
    INPUT = {"jobId": "j1", "owner": "owner@example.com", "otp": "123456"}

    @pytest.fixture
    def published(self, task_client: LocalTaskClient) -> list[dict[str, Any]]:
        calls: list[dict[str, Any]] = []

        async def publish(payload):
            calls.append(payload)
            return {"published": payload["selector"]}

        task_client.register("dmq-publish", publish)
        return calls

    async def test_valid_otp_publishes_every_variant(
        self,
        runner: WorkflowRunner,
        task_client: LocalTaskClient,
        templates: WorkflowRegistry,
        published: list[dict[str, Any]],
    ) -> None:
        task_client.register("authorizer-otp", lambda payload: {"valid": True})

        result = await runner.execute(templates.get("dmq-publish"), self.INPUT)

        assert result.succeeded, result.cause
        keys = {p["selector"]: p["s3Key"] for p in published}
        assert keys == {
            "youtube": "dmq/j1/result-square.png",
            "facebook": "dmq/j1/result-square.png",
            "instagram": "dmq/j1/result-vertical.png",
        }
        assert result.output == [
            {"published": "youtube"},
            {"published": "facebook"},
            {"published": "instagram"},
        ]

    @pytest.mark.parametrize("answer", [{"valid": False}, {}])
    async def test_invalid_or_missing_answer_is_rejected(
        self,
        runner: WorkflowRunner,
        task_client: LocalTaskClient,
        templates: WorkflowRegistry,
        published: list[dict[str, Any]],
        answer: dict[str, Any],
    ) -> None:
        task_client.register("authorizer-otp", lambda payload: answer)

        result = await runner.execute(templates.get("dmq-publish"), self.INPUT)

        assert result.error == "InvalidOTP"
        assert result.cause == "Entered owner and OTP pair is incorrect"
        assert published == []


class TestExecution:
    async def test_timeout(
        self, runner: WorkflowRunner, task_client: LocalTaskClient, make_definition
    ) -> None:
        async def slow(payload):
            await asyncio.sleep(2)

        task_client.register("slow", slow)
        definition = make_definition({"Work": {"Type": "Task", "Resource": "slow", "End": True}})

        result = await runner.execute(definition, {}, timeout=0.1)

        assert result.error == "ExecutionTimeout"
        assert "0.1" in (result.cause or "")
        assert result.trace.events[-1].kind == TraceEventKind.EXECUTION_FAILED

    async def test_definition_timeout_applies(
        self, runner: WorkflowRunner, task_client: LocalTaskClient, make_definition
    ) -> None:
        async def slow(payload):
            await asyncio.sleep(2)

        task_client.register("slow", slow)
        definition = make_definition(
            {"Work": {"Type": "Task", "Resource": "slow", "End": True}}, TimeoutSeconds=0.1
        )
        result = await runner.execute(definition, {})
        assert result.error == "ExecutionTimeout"

    async def test_deadline_interrupts_retry_backoff(
        self, task_client: LocalTaskClient, make_definition
    ) -> None:
        attempts: list[dict[str, Any]] = []

        async def throttled(payload):
            attempts.append(payload)
            raise ClassifiedError("ThrottlingError", "Rate exceeded")

        task_client.register("throttled", throttled)
        definition = make_definition(
            {
                "Work": {
                    "Type": "Task",
                    "Resource": "throttled",
                    "Retry": [
                        {
                            "ErrorEquals": ["ThrottlingError"],
                            "IntervalSeconds": 30,
                            "MaxAttempts": 3,
                        }
                    ],
                    "End": True,
                }
            }
        )
        # real asyncio.sleep backoff
        runner = WorkflowRunner(task_client, config=EngineConfig(execution_timeout=30))

        started = time.monotonic()
        result = await runner.execute(definition, {}, timeout=0.2)

        assert time.monotonic() - started < 2
        assert result.error == "ExecutionTimeout"
        assert len(attempts) == 1

    async def test_deadline_cancels_map_items(
        self, runner: WorkflowRunner, task_client: LocalTaskClient, make_definition
    ) -> None:
        started: list[int] = []
        cancelled: list[int] = []
        finished: list[int] = []

        async def render(payload):
            started.append(payload["index"])
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.append(payload["index"])
                raise
            finished.append(payload["index"])
            return payload

        task_client.register("render", render)
        definition = make_definition(
            {
                "Render variants": {
                    "Type": "Map",
                    "Items": [{"index": i} for i in range(4)],
                    "ItemProcessor": {
                        "StartAt": "Render",
                        "States": {
                            "Render": {
                                "Type": "Task",
                                "Resource": "render",
                                "Arguments": {"index": "{{ states.input.index }}"},
                                "End": True,
                            }
                        },
                    },
                    "End": True,
                }
            }
        )

        begin = time.monotonic()
        result = await runner.execute(definition, {}, timeout=0.2)

        assert time.monotonic() - begin < 2
        assert result.error == "ExecutionTimeout"
        assert sorted(started) == [0, 1, 2, 3]
        assert sorted(cancelled) == [0, 1, 2, 3]
        assert finished == []

    async def test_task_timeout_error_is_not_the_deadline(self, make_definition) -> None:
        class TimingOutClient(TaskInvocationClient):
            async def invoke(self, name: str, payload: Any, timeout: float | None = None) -> Any:
                raise TimeoutError("upstream read timed out")

        definition = make_definition({"Work": {"Type": "Task", "Resource": "x", "End": True}})
        runner = WorkflowRunner(TimingOutClient(), config=EngineConfig(execution_timeout=30))

        result = await runner.execute(definition, {})

        assert result.error == "TimeoutError"
        assert result.cause == "upstream read timed out"

    async def test_undefined_members_of_built_objects_are_dropped(
        self, runner: WorkflowRunner, make_definition
    ) -> None:
        definition = make_definition(
            {
                "Shape": {
                    "Type": "Pass",
                    "Output": "{{ {'a': states.input.missing, 'jobId': states.input.jobId} }}",
                    "End": True,
                }
            }
        )
        result = await runner.execute(definition, {"jobId": "j1"})

        assert result.succeeded
        assert result.output == {"jobId": "j1"}
        assert result.to_dict()["output"] == {"jobId": "j1"}
        assert result.trace.to_list()

    async def test_expression_error_is_fatal(
        self, runner: WorkflowRunner, task_client: LocalTaskClient, make_definition
    ) -> None:
        task_client.register("work", lambda payload: payload)
        definition = make_definition(
            {
                "Work": {
                    "Type": "Task",
                    "Resource": "work",
                    "Arguments": {"key": "{{ 'dmq/' ~ states.input.jobId }}"},
                    "Catch": [{"ErrorEquals": ["States.ALL"], "Next": "Recovered"}],
                    "End": True,
                },
                "Recovered": {"Type": "Succeed"},
            }
        )
        result = await runner.execute(definition, {})
        assert result.error == "ExpressionError"
        assert "states.input.jobId" in (result.cause or "")

    async def test_trace_events(self, runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition(
            {
                "Start": {"Type": "Pass", "Output": {"step": 1}, "Next": "Done"},
                "Done": {"Type": "Succeed"},
            }
        )
        result = await runner.execute(definition, {"a": 1})

        kinds = [e.kind for e in result.trace.events]
        assert kinds == [
            TraceEventKind.EXECUTION_STARTED,
            TraceEventKind.STATE_SUCCEEDED,
            TraceEventKind.STATE_SUCCEEDED,
            TraceEventKind.EXECUTION_SUCCEEDED,
        ]
        assert [e.sequence for e in result.trace.events] == [0, 1, 2, 3]
        assert result.trace.for_state("Start")[0].output == {"step": 1}

    async def test_input_is_not_mutated(self, runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition(
            {"Done": {"Type": "Succeed", "Output": {"x": "{{ states.input.x }}"}}}
        )
        input = {"x": [1, 2]}
        result = await runner.execute(definition, input)
        result.output["x"].append(3)
        assert input == {"x": [1, 2]}

    async def test_raw_document(self, runner: WorkflowRunner) -> None:
        document = {"Name": "raw", "StartAt": "Done", "States": {"Done": {"Type": "Succeed"}}}
        result = await runner.execute(document, {"a": 1})
        assert result.output == {"a": 1}
        assert result.workflow == "raw"

    async def test_invalid_raw_document_raises(self, runner: WorkflowRunner) -> None:
        with pytest.raises(DefinitionError):
            await runner.execute({"Name": "raw", "StartAt": "Done", "States": {}})

    async def test_execution_ids(self, runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition({"Done": {"Type": "Succeed"}})
        generated = await runner.execute(definition, {})
        explicit = await runner.execute(definition, {}, execution_id="exec_custom")

        assert generated.execution_id.startswith("exec_")
        assert explicit.execution_id == "exec_custom"
        assert explicit.trace.events[0].execution_id == "exec_custom"


class TestJobIds:
    @pytest.fixture
    def job_runner(self, task_client: LocalTaskClient) -> WorkflowRunner:
        return WorkflowRunner(task_client, config=EngineConfig(job_id_key="jobId"))

    async def test_job_id_is_injected(self, job_runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition({"Done": {"Type": "Succeed"}})
        result = await job_runner.execute(definition, {"text": "Hello"})

        job_id = result.output["jobId"]
        assert len(job_id) == 12
        assert job_id.isalnum()
        assert result.execution_id == job_id

    async def test_supplied_job_id_is_kept(
        self, job_runner: WorkflowRunner, make_definition
    ) -> None:
        definition = make_definition({"Done": {"Type": "Succeed"}})
        result = await job_runner.execute(definition, {"jobId": "abc123"})
        assert result.output == {"jobId": "abc123"}
        assert result.execution_id == "abc123"

    def test_non_object_input_gets_execution_id(self, job_runner: WorkflowRunner) -> None:
        input, execution_id = job_runner.prepare_input(["a"])
        assert input == ["a"]
        assert execution_id.startswith("exec_")


class TestResponses:
    async def test_success_response(self, runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition({"Done": {"Type": "Succeed"}})
        result = await runner.execute(definition, {"a": 1})
        assert result.to_response() == {
            "status": "success",
            "execution_id": result.execution_id,
            "output": {"a": 1},
        }

    async def test_failure_response(self, runner: WorkflowRunner, make_definition) -> None:
        definition = make_definition({"Stop": {"Type": "Fail", "Error": "Boom", "Cause": "why"}})
        result = await runner.execute(definition, {})
        response = result.to_response()
        assert response["status"] == "failure"
        assert response["error"] == "Boom"
        assert response["cause"] == "why"
        assert "output" not in response

    async def test_debug_response_writes_logfile(
        self, runner: WorkflowRunner, make_definition
    ) -> None:
        definition = make_definition({"Done": {"Type": "Succeed"}})
        result = await runner.execute(definition, {})
        logfile = Path(result.to_response(debug=True)["logfile"])
        try:
            assert logfile.exists()
            assert logfile.name.startswith("test-workflow-")
        finally:
            logfile.unlink(missing_ok=True)

    async def test_secrets_are_redacted(
        self, task_client: LocalTaskClient, make_definition
    ) -> None:
        redactor = SecretRedactor(EnvVarSecretProvider())
        await redactor.initialize()
        runner = WorkflowRunner(task_client, secret_redactor=redactor)
        task_client.register("leak", lambda payload: {"token": "bearer-token-xyz-123"})
        definition = make_definition({"Leak": {"Type": "Task", "Resource": "leak", "End": True}})

        result = await runner.execute(definition, {})

        assert result.to_response()["output"] == {"token": "***REDACTED***"}
        attempt = result.trace.for_state("Leak", TraceEventKind.TASK_ATTEMPT)[0]
        assert attempt.output == {"token": "***REDACTED***"}
