"""Tests for dgrecon.cluster module."""

import math
import random
from fractions import Fraction
from unittest.mock import patch

import pytest

from dgrecon.batch import BatchSystemError, JobState, JobTemplate
from dgrecon.cluster import (
    CancelScope,
    ClusterJobCoordinator,
    failure_budget,
    over_provisioned_count,
)
from dgrecon.config import ClusterConfig
from dgrecon.context import PipelineContext
from dgrecon.engine import Refinement
from dgrecon.errors import (
    ClusterError,
    JobFailure,
    MissingOutputError,
    PollTimeout,
    SubmissionFailure,
    ToolReportedError,
)
from dgrecon.process import TOOL_ERROR_MARKER

from conftest import FakeBatchSession, stats_block

DONE = JobState.DONE
FAILED = JobState.FAILED
RUNNING = JobState.RUNNING


class FakeClock:
    """Clock advanced only by the injected sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def inputs(work_dir):
    (work_dir / "model.xyz").write_text("xyz\n")
    (work_dir / "model.key").write_text("parameters /ff/amber99.prm\n")
    return work_dir / "model.xyz"


@pytest.fixture
def clock():
    return FakeClock()


def _config(**kwargs):
    values = dict(
        failure_rate=0.1,
        timeout=20.0,
        poll_interval=2.0,
        output_retries=2,
        output_retry_delay=1.0,
    )
    values.update(kwargs)
    return ClusterConfig(**values)


def _coordinator(engine, session, clock, **config):
    return ClusterJobCoordinator(
        engine,
        _config(**config),
        session_factory=lambda: session,
        sleep=clock.sleep,
        clock=clock,
        rng=random.Random(7),
    )


def _run(coordinator, xyz, n_models, ctx=None):
    ctx = ctx or PipelineContext(xyz.parent, "model")
    return coordinator.run(xyz, n_models, Refinement.ANNEALING, ctx)


def _job_files(work_dir):
    return sorted(
        p.name
        for p in work_dir.iterdir()
        if p.name.startswith(("model_", "RC_"))
    )


class TestOverProvisionedCount:
    """Number of jobs submitted for N models."""

    @pytest.mark.parametrize(
        "n_models, rate, expected",
        [
            (10, 0.1, 11),
            (1, 0.1, 2),
            (10, 0.0, 10),
            (3, 0.5, 5),
            (20, 0.1, 22),
        ],
    )
    def test_examples(self, n_models, rate, expected):
        assert over_provisioned_count(n_models, rate) == expected

    def test_matches_exact_ceiling(self):
        for rate in ("0", "0.05", "0.1", "0.2", "0.25", "0.3", "0.5", "0.99"):
            for n_models in range(1, 201):
                exact = math.ceil((1 + Fraction(rate)) * n_models)
                assert over_provisioned_count(n_models, float(rate)) == exact

    def test_invalid_model_count(self):
        with pytest.raises(ValueError):
            over_provisioned_count(0, 0.1)


class TestSubmission:
    """Job templates, per-job files and seeds."""

    def test_submits_over_provisioned_jobs(self, engine, inputs, clock):
        session = FakeBatchSession()
        _run(_coordinator(engine, session, clock), inputs, 10)
        assert session.attempts == 11
        assert [t.job_name for t in session.templates] == [
            f"RC_model_{i}" for i in range(1, 12)
        ]

    def test_job_template(self, engine, inputs, clock):
        session = FakeBatchSession()
        _run(_coordinator(engine, session, clock), inputs, 1)
        template = session.templates[0]
        assert template.remote_command == str(engine.distgeom_path)
        assert template.args[0] == str(inputs.parent / "model_1.xyz")
        assert template.args[1] == "1"
        assert template.args[-1] == "A"
        assert template.working_dir.is_absolute()
        assert template.working_dir == inputs.parent.absolute()
        assert template.native_specification == "-q all.q"

    def test_seeded_key_files(self, engine, inputs, clock):
        session = FakeBatchSession()
        coordinator = _coordinator(
            engine, session, clock, keep_temp_files=True, max_seed=1000
        )
        _run(coordinator, inputs, 3)
        seeds = []
        for i in range(1, 5):
            lines = (inputs.parent / f"model_{i}.key").read_text().split("\n")
            assert lines[0].startswith("RANDOMSEED ")
            assert lines[1] == "parameters /ff/amber99.prm"
            seeds.append(int(lines[0].split()[1]))
        assert all(0 <= seed < 1000 for seed in seeds)

    def test_submission_failures_over_budget(self, engine, inputs, clock):
        session = FakeBatchSession(fail_submit={2, 4}, default=[RUNNING])
        with pytest.raises(SubmissionFailure):
            _run(_coordinator(engine, session, clock), inputs, 10)
        assert session.attempts == 4
        assert sorted(session.terminated) == ["1001", "1003"]
        assert session.close_calls == 1
        assert _job_files(inputs.parent) == []

    def test_submission_failure_within_budget(self, engine, inputs, clock):
        session = FakeBatchSession(fail_submit={3})
        stats = _run(_coordinator(engine, session, clock), inputs, 10)
        assert stats.column("error_function_value")[1:] == [
            1.0, 2.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0, 11.0,
        ]


class TestReassembly:
    """The first N successes by submission index are kept."""

    def test_all_succeed(self, engine, inputs, clock):
        session = FakeBatchSession()
        ctx = PipelineContext(inputs.parent, "model")
        stats = _run(_coordinator(engine, session, clock), inputs, 10, ctx)
        assert stats.n_models == 10
        assert [r.model for r in stats] == list(range(1, 11))
        assert stats.column("error_function_value") == [None] + [
            float(i) for i in range(1, 11)
        ]
        for name in ("num_upper_bound_viol", "rms_bound_viol"):
            assert len(stats.column(name)) == 11
        for i in range(1, 11):
            model = inputs.parent / f"model.{i:03d}"
            assert model.read_text() == f"job {i}\n"
        assert not (inputs.parent / "model.011").exists()
        assert len(ctx.output_files) == 10
        assert _job_files(inputs.parent) == []
        assert session.close_calls == 1

    @pytest.mark.parametrize(
        "schedule",
        [
            {
                5: [DONE],
                4: [DONE],
                2: [RUNNING, DONE],
                1: [RUNNING, RUNNING, DONE],
            },
            {2: [DONE], 4: [RUNNING, DONE], 5: [RUNNING, DONE]},
            {4: [DONE], 5: [DONE], 2: [DONE], 1: [RUNNING] * 5 + [DONE]},
        ],
    )
    def test_independent_of_completion_order(
        self, engine, inputs, clock, schedule
    ):
        schedule = dict(schedule)
        schedule.setdefault(3, [RUNNING])
        schedule.setdefault(1, [RUNNING])
        session = FakeBatchSession(schedule=schedule)
        coordinator = _coordinator(engine, session, clock, failure_rate=0.5)
        stats = _run(coordinator, inputs, 3)
        assert stats.column("error_function_value") == [None, 2.0, 4.0, 5.0]

    def test_surplus_running_jobs_are_terminated(self, engine, inputs, clock):
        session = FakeBatchSession(schedule={2: [RUNNING]})
        _run(_coordinator(engine, session, clock, failure_rate=0.5), inputs, 2)
        assert session.terminated == ["1002"]
        assert session.close_calls == 1

    def test_more_successes_than_needed(self, engine, inputs, clock):
        session = FakeBatchSession()
        coordinator = _coordinator(engine, session, clock, failure_rate=0.5)
        stats = _run(coordinator, inputs, 3)
        assert stats.column("error_function_value") == [None, 1.0, 2.0, 3.0]
        assert not (inputs.parent / "model_4.001").exists()
        assert not (inputs.parent / "model_5.001").exists()

    def test_progress_notifications(self, engine, inputs, clock):
        counts = []
        ctx = PipelineContext(inputs.parent, "model")
        ctx.notify_models = lambda n, total: counts.append((n, total))
        session = FakeBatchSession(
            schedule={
                1: [DONE],
                2: [RUNNING, DONE],
                3: [RUNNING, RUNNING, DONE],
            }
        )
        coordinator = _coordinator(engine, session, clock, failure_rate=0.0)
        _run(coordinator, inputs, 3, ctx)
        assert counts == [(1, 3), (2, 3), (3, 3)]

    def test_job_logs_are_appended_to_run_log(self, engine, inputs, clock):
        ctx = PipelineContext(inputs.parent, "model")
        _run(_coordinator(engine, FakeBatchSession(), clock), inputs, 1, ctx)
        assert "#job: RC_model_1 (1001)" in ctx.log_path.read_text()

    def test_keep_temp_files(self, engine, inputs, clock):
        session = FakeBatchSession()
        coordinator = _coordinator(
            engine, session, clock, keep_temp_files=True
        )
        _run(coordinator, inputs, 1)
        names = _job_files(inputs.parent)
        assert "model_1.xyz" in names
        assert "RC_model_1.o1001" in names

    def test_job_files_kept_without_clean_up(self, engine, inputs, clock):
        ctx = PipelineContext(inputs.parent, "model", clean_up=False)
        _run(_coordinator(engine, FakeBatchSession(), clock), inputs, 2, ctx)
        names = _job_files(inputs.parent)
        for stem in ("model_1", "model_2", "model_3"):
            assert f"{stem}.xyz" in names
            assert f"{stem}.key" in names
        assert "RC_model_1.o1001" in names
        assert "RC_model_3.o1003" in names


class TestFailureBudget:
    """End-to-end scenarios with N=10, f=0.1 (11 jobs, budget 1)."""

    def test_two_failures_abort(self, engine, inputs, clock):
        session = FakeBatchSession(schedule={2: [FAILED], 5: [FAILED]})
        ctx = PipelineContext(inputs.parent, "model")
        with pytest.raises(JobFailure):
            _run(_coordinator(engine, session, clock), inputs, 10, ctx)
        live = set(session.job_ids) - {"1002", "1005"}
        polled_done = {"1001", "1003", "1004"}
        assert set(session.terminated) == live - polled_done
        assert session.close_calls == 1
        assert _job_files(inputs.parent) == []

    def test_two_failures_terminate_every_running_job(
        self, engine, inputs, clock
    ):
        session = FakeBatchSession(
            schedule={2: [FAILED], 5: [FAILED]}, default=[RUNNING]
        )
        with pytest.raises(JobFailure):
            _run(_coordinator(engine, session, clock), inputs, 10)
        assert sorted(session.terminated) == sorted(
            set(session.job_ids) - {"1002", "1005"}
        )

    def test_one_failure_within_budget(self, engine, inputs, clock):
        session = FakeBatchSession(schedule={7: [FAILED]})
        stats = _run(_coordinator(engine, session, clock), inputs, 10)
        assert stats.n_models == 10
        assert stats.column("error_function_value")[1:] == [
            1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 8.0, 9.0, 10.0, 11.0,
        ]

    def test_one_failure_and_one_straggler_is_not_enough(
        self, engine, inputs, clock
    ):
        session = FakeBatchSession(schedule={7: [FAILED], 11: [RUNNING]})
        with pytest.raises(PollTimeout):
            _run(_coordinator(engine, session, clock), inputs, 10)
        assert session.terminated == ["1011"]

    def test_submission_and_job_failures_are_counted_separately(
        self, engine, inputs, clock
    ):
        session = FakeBatchSession(fail_submit={3}, schedule={7: [FAILED]})
        with pytest.raises(JobFailure, match="can still complete"):
            _run(_coordinator(engine, session, clock), inputs, 10)

    @pytest.mark.parametrize(
        "n_models, rate, expected",
        [(100, 0.29, 29), (10, 0.1, 1), (3, 0.5, 1.5), (10, 0.0, 0)],
    )
    def test_budget(self, n_models, rate, expected):
        assert failure_budget(n_models, rate) == expected

    def test_budget_is_exact_at_the_boundary(self, engine, inputs, clock):
        session = FakeBatchSession(fail_submit=range(1, 30))
        coordinator = _coordinator(engine, session, clock, failure_rate=0.29)
        stats = _run(coordinator, inputs, 100)
        assert session.attempts == 129
        assert stats.n_models == 100
        assert stats.column("error_function_value")[1] == 30.0

    def test_one_over_the_budget_aborts(self, engine, inputs, clock):
        session = FakeBatchSession(fail_submit=range(1, 31))
        coordinator = _coordinator(engine, session, clock, failure_rate=0.29)
        with pytest.raises(SubmissionFailure):
            _run(coordinator, inputs, 100)
        assert session.attempts == 30

    def test_zero_failure_rate(self, engine, inputs, clock):
        session = FakeBatchSession(schedule={1: [FAILED]})
        coordinator = _coordinator(engine, session, clock, failure_rate=0.0)
        with pytest.raises(JobFailure):
            _run(coordinator, inputs, 2)


class TestTimeoutAndOutputs:
    def test_timeout(self, engine, inputs, clock):
        session = FakeBatchSession(default=[RUNNING])
        ctx = PipelineContext(inputs.parent, "model")
        with pytest.raises(PollTimeout):
            _run(_coordinator(engine, session, clock), inputs, 2, ctx)
        assert clock.now > 20.0
        assert sorted(session.terminated) == sorted(session.job_ids)
        assert ctx.output_files == []
        assert session.close_calls == 1

    def test_polls_sleep_first(self, engine, inputs, clock):
        session = FakeBatchSession()
        _run(_coordinator(engine, session, clock), inputs, 1)
        assert clock.sleeps[0] == 2.0
        assert all(n == 1 for n in session.polls.values())

    def test_missing_output_after_retries(self, engine, inputs, clock):
        session = FakeBatchSession(missing_output={1})
        coordinator = _coordinator(engine, session, clock, failure_rate=0.0)
        with pytest.raises(MissingOutputError):
            _run(coordinator, inputs, 1)
        assert clock.sleeps == [2.0, 1.0, 1.0]

    def test_tool_error_in_job_log(self, engine, inputs, clock):
        class MarkerSession(FakeBatchSession):
            def _write_outputs(self, index, job_id, template):
                super()._write_outputs(index, job_id, template)
                log = template.output_path / f"{template.job_name}.o{job_id}"
                log.write_text(f"{TOOL_ERROR_MARKER}\n")

        coordinator = _coordinator(
            engine, MarkerSession(), clock, failure_rate=0.0
        )
        with pytest.raises(ToolReportedError):
            _run(coordinator, inputs, 1)

    def test_status_query_error(self, engine, inputs, clock):
        class BrokenSession(FakeBatchSession):
            def _status(self, job_id):
                raise BatchSystemError("qstat: cannot reach qmaster")

        session = BrokenSession()
        with pytest.raises(ClusterError, match="qmaster"):
            _run(_coordinator(engine, session, clock), inputs, 1)
        assert session.close_calls == 1


class TestCancellation:
    """Jobs are terminated and the session closed exactly once."""

    def test_cancel_scope_releases_once(self):
        session = FakeBatchSession(default=[RUNNING])
        session.submit(
            JobTemplate("distgeom")
        )
        with CancelScope(session) as scope:
            scope.release()
        scope.release()
        assert session.terminated == ["1001"]
        assert session.close_calls == 1

    def test_cancel_scope_registers_with_atexit(self):
        session = FakeBatchSession()
        with patch("dgrecon.cluster.atexit") as mock_atexit:
            with CancelScope(session) as scope:
                mock_atexit.register.assert_called_once_with(scope.release)
            mock_atexit.unregister.assert_called_once_with(scope.release)

    def test_terminate_error_still_closes(self):
        class StubbornSession(FakeBatchSession):
            def _terminate(self, job_ids):
                raise BatchSystemError("qdel failed")

        session = StubbornSession(default=[RUNNING])
        session.submit(
            JobTemplate("distgeom")
        )
        CancelScope(session).release()
        assert session.closed

    def test_keyboard_interrupt_while_polling(self, engine, inputs, clock):
        class InterruptedSession(FakeBatchSession):
            def _status(self, job_id):
                raise KeyboardInterrupt

        session = InterruptedSession()
        with pytest.raises(KeyboardInterrupt):
            _run(_coordinator(engine, session, clock), inputs, 2)
        assert sorted(session.terminated) == sorted(session.job_ids)
        assert session.close_calls == 1
        assert _job_files(inputs.parent) == []

    def test_stop_from_another_caller(self, engine, inputs, clock):
        session = FakeBatchSession(default=[RUNNING])
        coordinator = _coordinator(engine, session, clock)

        def sleep(seconds):
            clock.sleep(seconds)
            if clock.now >= 4.0:
                coordinator.stop()

        coordinator._sleep = sleep
        with pytest.raises(ClusterError, match="stopped"):
            _run(coordinator, inputs, 2)
        assert sorted(session.terminated) == sorted(session.job_ids)
        assert session.close_calls == 1

    def test_stop_during_submission(self, engine, inputs, clock):
        class StoppingSession(FakeBatchSession):
            def _submit(self, template):
                job_id = super()._submit(template)
                if self.attempts == 2:
                    coordinator.stop()
                return job_id

        session = StoppingSession(default=[RUNNING])
        coordinator = _coordinator(engine, session, clock, failure_rate=0.5)
        with pytest.raises(ClusterError, match="stopped"):
            _run(coordinator, inputs, 10)
        assert session.attempts == 2
        assert sorted(session.terminated) == ["1001", "1002"]
        assert session.close_calls == 1
        assert clock.sleeps == []
        assert _job_files(inputs.parent) == []
