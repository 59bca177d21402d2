from maintdesk.services.scheduling.calculator import ScheduleSpec, next_occurrence
from maintdesk.services.scheduling.generator import (
    generate_for_template,
    generate_now,
    run_recurring_generation,
    ticket_id_for,
)
from maintdesk.services.scheduling.sweeps import (
    pause_organization,
    resume_organization,
    run_demo_expiry_sweep,
    run_feature_loss_sweep,
)

__all__ = [
    "ScheduleSpec",
    "generate_for_template",
    "generate_now",
    "next_occurrence",
    "pause_organization",
    "resume_organization",
    "run_demo_expiry_sweep",
    "run_feature_loss_sweep",
    "run_recurring_generation",
    "ticket_id_for",
]
