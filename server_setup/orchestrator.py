"""
Runs the steps of an installation mode in order.

Each step is checkpointed before it starts and executes inside its own
``StepContext``. A failing step is recorded and, when configured, rolled
back; a failing critical step stops the run.

License: MIT
Version: 1.1.0
"""

import datetime
import logging
import os
import time
from typing import Optional, Sequence

from rich.console import Console

from . import utils
from .checkpoint import CheckpointManager
from .config import APP_NAME, VERSION, Settings
from .errors import CheckpointError, SetupError, ValidationError
from .logging_config import get_log_file, log_section
from .report import SetupReport, StepResult
from .runner import CommandRunner
from .steps import ProvisioningStep, step_context, steps_for_mode
from .validation import validate_pre_installation


class SetupOrchestrator:
    def __init__(
        self,
        settings: Settings,
        runner: CommandRunner,
        checkpoints: Optional[CheckpointManager] = None,
        console: Optional[Console] = None,
        logger: Optional[logging.Logger] = None,
        steps: Optional[Sequence[ProvisioningStep]] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.logger = logger or logging.getLogger("server_setup")
        self.checkpoints = checkpoints or CheckpointManager(settings, runner, logger=self.logger)
        self.console = console
        self.steps = list(steps) if steps is not None else steps_for_mode(settings.mode)

    #####################################
    # Pre-flight
    #####################################

    def preflight(self) -> None:
        """Refuse to start on a host that cannot be provisioned."""
        if os.geteuid() != 0:
            raise ValidationError("This command must be run as root (use sudo)")
        results = validate_pre_installation(self.settings, self.runner)
        blocking = [r for r in results if r.blocking]
        if blocking:
            raise ValidationError(
                "Pre-installation validation failed: "
                + "; ".join(f"{r.name}: {r.message}" for r in blocking)
            )
        self.logger.info("Pre-installation validation passed")

    #####################################
    # Execution
    #####################################

    def run(self, preflight: bool = True) -> SetupReport:
        s = self.settings
        report = SetupReport(mode=s.mode)
        report.results = [StepResult(step.name) for step in self.steps]
        self.logger.info(f"Starting {APP_NAME} v{VERSION} (mode: {s.mode})")
        if self.runner.dry_run:
            self.logger.warning("DRY RUN MODE - no changes will be made")
        elif preflight:
            log_section("Pre-installation Validation", self.console)
            self.preflight()

        step_names = [step.name for step in self.steps]
        aborted = None
        for step, result in zip(self.steps, report.results):
            if aborted is not None:
                result.status = "skipped"
                result.message = f"Skipped after critical failure in {aborted}"
                continue
            log_section(f"{step.name}: {step.description}", self.console)
            self.run_step(step, result, step_names)
            if result.failed and step.critical:
                self.logger.error(f"Critical step {step.name} failed; aborting remaining steps")
                aborted = step.name

        report.finished_at = datetime.datetime.now()
        report.reboot_required = utils.reboot_required(s.root)
        report.system_info = utils.system_info(s.root)
        report.log_file = get_log_file(self.logger)
        return report

    def run_step(self, step: ProvisioningStep, result: StepResult, step_names: Sequence[str]) -> None:
        result.status = "in_progress"
        start = time.monotonic()
        try:
            if not self.runner.dry_run:
                result.checkpoint = self.checkpoints.create(step.name, step.checkpoint_paths)
            with step_context(
                self.settings, self.runner, self.logger, self.console, step_names
            ) as ctx:
                step.run(ctx)
        except (SetupError, OSError, UnicodeError) as e:
            result.status = "failed"
            result.message = str(e) if isinstance(e, SetupError) else f"{type(e).__name__}: {e}"
            self.logger.error(f"Step {step.name} failed: {result.message}")
            if result.checkpoint is not None and self.settings.rollback_on_failure:
                self.rollback_step(step, result)
        else:
            result.status = "success"
            result.message = "Completed successfully"
            self.logger.info(f"Step {step.name} completed")
        finally:
            result.duration = time.monotonic() - start

    def rollback_step(self, step: ProvisioningStep, result: StepResult) -> None:
        try:
            outcome = self.checkpoints.rollback(step.name)
        except CheckpointError as e:
            self.logger.error(f"Rollback of {step.name} failed: {e}")
            return
        if not outcome.success:
            not_restored = outcome.missing + outcome.failed
            self.logger.error(f"Rollback of {step.name} incomplete: {', '.join(not_restored)}")
            result.message = f"{result.message} (rollback incomplete: {', '.join(not_restored)})"
            return
        result.status = "rolled_back"
        result.message = f"{result.message} (rolled back {len(outcome.restored)} file(s))"
