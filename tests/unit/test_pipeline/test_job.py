# SPDX-License-Identifier: LGPL-3.0-or-later
"""
Unit tests for the conversion job state machine and outcomes
"""

from pathlib import Path

import pytest

from vmi.core.exceptions import ErrorKind, IOFailure, MalformedLayout
from vmi.formats.descriptor import FormatDescriptor, FormatTag
from vmi.pipeline.job import CancelToken, ConversionJob, Failed, JobState, Progress, Succeeded


@pytest.fixture
def job():
    return ConversionJob(
        FormatDescriptor(FormatTag.RAW, Path("/src.img")),
        FormatDescriptor(FormatTag.VMDK, Path("/dst.vmdk")),
    )


@pytest.mark.unit
class TestTransitions:
    def test_happy_path(self, job):
        assert job.state == JobState.IDLE
        for st in (JobState.READING, JobState.TRANSFORMING, JobState.WRITING):
            job.transition(st)
        job.succeed(Succeeded(10, "abc"))
        assert job.states == [
            JobState.IDLE, JobState.READING, JobState.TRANSFORMING, JobState.WRITING, JobState.DONE,
        ]
        assert job.finished
        assert job.outcome.ok

    @pytest.mark.parametrize("target", [JobState.TRANSFORMING, JobState.WRITING, JobState.DONE, JobState.IDLE])
    def test_skipping_states_is_illegal(self, job, target):
        with pytest.raises(RuntimeError, match="illegal"):
            job.transition(target)

    def test_failure_from_any_running_state(self, job):
        job.transition(JobState.READING)
        outcome = job.fail(MalformedLayout(msg="grain table points past end of file"))
        assert job.state == JobState.FAILED
        assert isinstance(outcome, Failed)
        assert outcome.kind == ErrorKind.MALFORMED_LAYOUT
        assert outcome.message == "grain table points past end of file"
        assert not outcome.ok

    def test_terminal_states_are_final(self, job):
        job.fail(IOFailure(msg="boom"))
        with pytest.raises(RuntimeError):
            job.transition(JobState.READING)
        with pytest.raises(RuntimeError):
            job.fail(IOFailure(msg="again"))

    def test_history_timestamps_increase(self, job):
        job.transition(JobState.READING)
        times = [t for _s, t in job.history]
        assert times == sorted(times)


@pytest.mark.unit
class TestOutcomes:
    def test_failed_keeps_cause_chain(self):
        err = IOFailure(msg="upload failed", cause=ConnectionResetError("reset by peer"))
        f = Failed.from_exception(err)
        assert f.kind == ErrorKind.IO_FAILURE
        assert f.chain[0] == "IOFailure: upload failed"
        assert "ConnectionResetError: reset by peer" in f.chain
        assert f.error is err

    def test_plain_exceptions(self):
        assert Failed.from_exception(OSError("disk full")).kind == ErrorKind.IO_FAILURE
        f = Failed.from_exception(ValueError())
        assert f.kind == ErrorKind.INTERNAL
        assert f.message == "ValueError"

    def test_cancel_token(self):
        tok = CancelToken()
        assert not tok.is_set()
        assert tok.wait(0.0) is False
        tok.cancel()
        assert tok.is_set()
        assert tok.wait(0.0) is True

    def test_progress_fraction(self):
        assert Progress().fraction == 0.0
        assert Progress(bytes_done=256, bytes_total=1024).fraction == 0.25


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
