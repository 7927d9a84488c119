"""Run reporting."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional


@dataclass
class PhaseResult:
    """Result of a pipeline phase."""
    name: str
    description: str
    status: str  # 'passed', 'failed', 'skipped'
    message: str = ''
    duration: float = 0.0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


def serializable_context(context: dict) -> dict:
    """Filter context to public, JSON-serializable values."""
    result = {}
    for key, value in context.items():
        # Private keys carry credentials and temp paths
        if key.startswith('_'):
            continue
        try:
            json.dumps(value)
            result[key] = value
        except (TypeError, ValueError):
            pass
    return result


@dataclass
class RunReport:
    """Collects phase results and writes JSON/markdown reports."""
    env: str
    report_dir: Path
    scenario: str = ''
    phases: list[PhaseResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    success: bool = False

    _descriptions: dict = field(default_factory=dict, repr=False)
    _phase_start: Optional[datetime] = field(default=None, repr=False)

    def start(self):
        """Mark run start."""
        self.started_at = datetime.now()
        self.report_dir.mkdir(parents=True, exist_ok=True)

    def start_phase(self, name: str, description: str):
        """Mark phase start."""
        self._descriptions[name] = description
        self._phase_start = datetime.now()

    def pass_phase(self, name: str, message: str = '', duration: float = 0.0):
        """Record passed phase."""
        self._record_phase(name, 'passed', message, duration)

    def fail_phase(self, name: str, message: str = '', duration: float = 0.0):
        """Record failed phase."""
        self._record_phase(name, 'failed', message, duration)

    def skip_phase(self, name: str, description: str):
        """Record skipped phase."""
        self.phases.append(PhaseResult(
            name=name,
            description=description,
            status='skipped'
        ))

    def _record_phase(self, name: str, status: str, message: str, duration: float):
        """Record phase result."""
        now = datetime.now()
        if duration == 0.0 and self._phase_start:
            duration = (now - self._phase_start).total_seconds()

        self.phases.append(PhaseResult(
            name=name,
            description=self._descriptions.get(name, name),
            status=status,
            message=message,
            duration=duration,
            started_at=self._phase_start,
            finished_at=now
        ))
        self._phase_start = None

    @property
    def duration(self) -> float:
        if self.finished_at and self.started_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def finish(self, success: bool):
        """Finalize report and write files."""
        self.finished_at = datetime.now()
        self.success = success
        self._write_json()
        self._write_markdown()

    def _write_json(self):
        """Write JSON report."""
        data = {
            'scenario': self.scenario,
            'env': self.env,
            'success': self.success,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'duration': self.duration,
            'phases': [
                {
                    'name': p.name,
                    'description': p.description,
                    'status': p.status,
                    'message': p.message,
                    'duration': p.duration
                }
                for p in self.phases
            ]
        }
        with open(self._report_filename('json'), 'w', encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def _write_markdown(self):
        """Write markdown report."""
        status = 'PASSED' if self.success else 'FAILED'

        lines = [
            f"# {self.scenario}",
            "",
            f"**Environment**: {self.env}",
            f"**Status**: {status}",
            f"**Date**: {self.started_at.strftime('%Y-%m-%d %H:%M:%S') if self.started_at else 'N/A'}",
            f"**Duration**: {self.duration:.1f}s",
            "",
            "## Phases",
            "",
            "| Phase | Status | Duration | Message |",
            "|-------|--------|----------|---------|",
        ]

        for p in self.phases:
            marker = {'passed': '✅', 'failed': '❌', 'skipped': '⏭️'}.get(p.status, '❓')
            message = p.message.replace('\n', ' ').replace('|', '\\|')
            lines.append(f"| {p.name} | {marker} {p.status} | {p.duration:.1f}s | {message} |")

        lines.extend(["", "---", f"Generated: {datetime.now().isoformat()}"])

        with open(self._report_filename('md'), 'w', encoding="utf-8") as f:
            f.write('\n'.join(lines))

    def _report_filename(self, ext: str) -> Path:
        """Generate report filename.

        Includes scenario and environment so dev and prod runs never collide.
        """
        timestamp = self.started_at.strftime('%Y%m%d-%H%M%S') if self.started_at else 'unknown'
        status = 'passed' if self.success else 'failed'
        scenario_slug = self.scenario.replace('/', '-') if self.scenario else 'run'
        return self.report_dir / f"{timestamp}.{scenario_slug}.{self.env}.{status}.{ext}"

    def to_dict(self, context: Optional[dict] = None) -> dict:
        """Return report as dictionary for JSON output.

        Args:
            context: Optional context dict to include in output.
                     Private and non-serializable values are dropped.
        """
        result = {
            'scenario': self.scenario,
            'env': self.env,
            'success': self.success,
            'duration_seconds': round(self.duration, 1),
            'phases': [
                {
                    'name': p.name,
                    'status': p.status,
                    'duration': round(p.duration, 1),
                }
                for p in self.phases
            ]
        }

        if not self.success:
            for p in self.phases:
                if p.status == 'failed' and p.message:
                    result['error'] = p.message
                    break

        if context:
            public = serializable_context(context)
            if public:
                result['context'] = public

        return result
