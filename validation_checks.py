"""Pass/warn/fail result log shared by the validation and diagnostic scripts.

Each check appends one :class:`CheckResult`; the log keeps them in order,
prints them as they are recorded, and tallies them at the end.  The process
exit code is derived from the tally: 1 if any ERROR was recorded, else 0.
"""

from dataclasses import dataclass, field
from enum import Enum


class Status(str, Enum):
    SUCCESS = "SUCCESS"
    WARNING = "WARNING"
    ERROR = "ERROR"


# Console tag and report marker for each status
_TAGS = {
    Status.SUCCESS: ("[ok]", "✅"),
    Status.WARNING: ("[warn]", "⚠️ "),
    Status.ERROR: ("[error]", "❌"),
}


@dataclass(frozen=True)
class CheckResult:
    status: Status
    message: str

    def console_line(self) -> str:
        return f"  {_TAGS[self.status][0]} {self.message}"

    def report_line(self) -> str:
        return f"{_TAGS[self.status][1]} {self.message}"


@dataclass
class CheckLog:
    """Ordered list of check results with a running tally.

    Example::

        log = CheckLog()
        log.success("Source database connection successful")
        log.warning("Collection counts differ for 'food'")
        assert log.counts() == {Status.SUCCESS: 1, Status.WARNING: 1,
                                Status.ERROR: 0}
        sys.exit(log.exit_code())
    """

    results: list[CheckResult] = field(default_factory=list)
    echo: bool = True

    def add(self, status: Status, message: str) -> CheckResult:
        result = CheckResult(Status(status), message)
        self.results.append(result)
        if self.echo:
            print(result.console_line())
        return result

    def success(self, message: str) -> CheckResult:
        return self.add(Status.SUCCESS, message)

    def warning(self, message: str) -> CheckResult:
        return self.add(Status.WARNING, message)

    def error(self, message: str) -> CheckResult:
        return self.add(Status.ERROR, message)

    def extend(self, other: "CheckLog") -> None:
        """Append every result of *other* (without echoing them again)."""
        self.results.extend(other.results)

    # -- Tally --------------------------------------------------------------

    @property
    def total(self) -> int:
        return len(self.results)

    def counts(self) -> dict[Status, int]:
        tally = {status: 0 for status in Status}
        for result in self.results:
            tally[result.status] += 1
        return tally

    @property
    def has_errors(self) -> bool:
        return any(r.status is Status.ERROR for r in self.results)

    def exit_code(self) -> int:
        return 1 if self.has_errors else 0

    def render_lines(self) -> list[str]:
        return [r.report_line() for r in self.results]

    def print_summary(self) -> None:
        counts = self.counts()
        print(f"  Successful checks: {counts[Status.SUCCESS]}")
        print(f"  Warnings:          {counts[Status.WARNING]}")
        print(f"  Errors:            {counts[Status.ERROR]}")
