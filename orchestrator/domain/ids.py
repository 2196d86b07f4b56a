from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_local_request_id() -> str:
    return f"txn_{ulid_module.new().str}"
