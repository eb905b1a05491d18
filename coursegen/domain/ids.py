from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_course_id() -> str:
    return f"crs_{ulid_module.new().str}"


def new_unit_id() -> str:
    return f"unit_{ulid_module.new().str}"


def new_attempt_id() -> str:
    return f"att_{ulid_module.new().str}"


def new_work_item_id() -> str:
    return f"wrk_{ulid_module.new().str}"


def stage_subject_id(*, course_id: str, stage: int) -> str:
    # Attempts for non-parallel stages are keyed by course and stage.
    return f"{course_id}:stage_{stage}"
