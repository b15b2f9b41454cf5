"""Timing and size statistics for a finished compile job."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class JobStat:
    """Output size and compile times (in milliseconds) of one job.

    The arithmetic operators combine statistics field by field. The result
    no longer stands for a single job, so its ``job_id`` is always 0.
    """

    output_size: int = 0
    compile_time_real: int = 0
    compile_time_user: int = 0
    compile_time_sys: int = 0
    job_id: int = 0

    def __add__(self, other: JobStat) -> JobStat:
        if not isinstance(other, JobStat):
            return NotImplemented
        return JobStat(
            output_size=self.output_size + other.output_size,
            compile_time_real=self.compile_time_real + other.compile_time_real,
            compile_time_user=self.compile_time_user + other.compile_time_user,
            compile_time_sys=self.compile_time_sys + other.compile_time_sys,
        )

    def __sub__(self, other: JobStat) -> JobStat:
        if not isinstance(other, JobStat):
            return NotImplemented
        return JobStat(
            output_size=self.output_size - other.output_size,
            compile_time_real=self.compile_time_real - other.compile_time_real,
            compile_time_user=self.compile_time_user - other.compile_time_user,
            compile_time_sys=self.compile_time_sys - other.compile_time_sys,
        )

    def __floordiv__(self, divisor: int) -> JobStat:
        if not isinstance(divisor, int) or isinstance(divisor, bool):
            return NotImplemented
        if divisor == 0:
            raise ZeroDivisionError("cannot divide job statistics by zero")
        return JobStat(
            output_size=_truncating_div(self.output_size, divisor),
            compile_time_real=_truncating_div(self.compile_time_real, divisor),
            compile_time_user=_truncating_div(self.compile_time_user, divisor),
            compile_time_sys=_truncating_div(self.compile_time_sys, divisor),
        )


def _truncating_div(value: int, divisor: int) -> int:
    """Integer division rounding toward zero."""
    quotient = abs(value) // abs(divisor)
    return quotient if (value >= 0) == (divisor > 0) else -quotient