"""
Demo traffic for the operations dashboard.

Records a burst of synthetic requests so that ``clinical-ai-guard dashboard``
has something to show on a fresh install.
"""

import random
import time
from typing import Any, Dict, Optional

from clinical_ai_guard.config.loader import ConfigSource
from clinical_ai_guard.core.admission import AdmissionController
from clinical_ai_guard.core.clock import Clock
from clinical_ai_guard.core.monitor import Monitor, RequestRecord
from clinical_ai_guard.storage.store import KeyValueStore

DEMO_TASKS = ("explain_triage", "review_treatment", "imci_classification", "clinical_assistance")
DEMO_USERS = ((101, "doctor"), (102, "nurse"), (103, "clinician"))
DEMO_RISK_FLAGS = ("dosage_out_of_range", "missing_contraindication", "unverified_diagnosis")


def seed_demo_metrics(
    store: KeyValueStore,
    config_source: Optional[ConfigSource] = None,
    requests: int = 50,
    seed: Optional[int] = None,
    clock: Clock = time.time,
) -> Dict[str, Any]:
    """Record synthetic requests in the monitor and admission counters.

    Args:
        store: Shared store to write into
        config_source: Live configuration (defaults to built-ins)
        requests: Number of requests to record
        seed: Seed for reproducible traffic

    Returns:
        Counts of what was recorded

    Raises:
        ValueError: If requests is not positive
    """
    if requests <= 0:
        raise ValueError("requests must be > 0")

    rng = random.Random(seed)
    config_source = config_source or ConfigSource()
    monitor = Monitor(store, config_source, clock)
    admission = AdmissionController(store, config_source, clock)

    summary = {"requests": 0, "failures": 0, "overridden": 0, "cached": 0}
    for _ in range(requests):
        task = rng.choice(DEMO_TASKS)
        user_id, _role = rng.choice(DEMO_USERS)
        success = rng.random() > 0.08
        from_cache = success and rng.random() < 0.25
        overridden = success and not from_cache and rng.random() < 0.05
        latency_ms = rng.randint(5, 40) if from_cache else int(rng.lognormvariate(7.3, 0.5))

        monitor.record_request(RequestRecord(
            task=task,
            success=success,
            latency_ms=latency_ms,
            was_overridden=overridden,
            risk_flags=[rng.choice(DEMO_RISK_FLAGS)] if overridden else [],
            from_cache=from_cache,
            user_id=user_id,
        ))
        admission.record(task, user_id, success)

        summary["requests"] += 1
        summary["failures"] += 0 if success else 1
        summary["overridden"] += 1 if overridden else 0
        summary["cached"] += 1 if from_cache else 0

    return summary
