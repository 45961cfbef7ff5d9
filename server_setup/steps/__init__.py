"""
Ordered provisioning steps and the installation modes that select them.
"""

from typing import Dict, List, Tuple

from ..config import INSTALLATION_MODES
from ..validation import validate_mode
from .base import ProvisioningStep, StepContext, step_context
from .monitoring import MonitoringStep
from .nginx import NginxStep
from .nodejs import NodejsStep
from .optimization import OptimizationStep
from .prerequisites import PrerequisitesStep
from .python import PythonStep
from .security import SecurityStep
from .shell import ShellStep
from .users import UsersStep
from .validation import ValidationStep

STEPS: Tuple[ProvisioningStep, ...] = (
    PrerequisitesStep(),
    UsersStep(),
    ShellStep(),
    NodejsStep(),
    PythonStep(),
    NginxStep(),
    SecurityStep(),
    MonitoringStep(),
    OptimizationStep(),
    ValidationStep(),
)

STEPS_BY_NAME: Dict[str, ProvisioningStep] = {step.name: step for step in STEPS}

MODES: Dict[str, Tuple[str, ...]] = {
    "full": tuple(step.name for step in STEPS),
    "nginx-only": ("01-prerequisites", "02-users", "06-nginx", "07-security", "10-validation"),
    "dev-only": (
        "01-prerequisites",
        "02-users",
        "03-shell",
        "04-nodejs",
        "05-python",
        "10-validation",
    ),
    "minimal": ("01-prerequisites", "02-users", "07-security"),
}

MODE_DESCRIPTIONS: Dict[str, str] = {
    "full": "Complete installation with all components",
    "nginx-only": "Web server with users and security only",
    "dev-only": "Development toolchain without web server",
    "minimal": "Prerequisites, users and security only",
}


def steps_for_mode(mode: str) -> List[ProvisioningStep]:
    """Return the steps of ``mode`` in execution order."""
    validate_mode(mode, INSTALLATION_MODES)
    return [STEPS_BY_NAME[name] for name in MODES[mode]]


__all__ = [
    "MODES",
    "MODE_DESCRIPTIONS",
    "STEPS",
    "STEPS_BY_NAME",
    "ProvisioningStep",
    "StepContext",
    "step_context",
    "steps_for_mode",
]
