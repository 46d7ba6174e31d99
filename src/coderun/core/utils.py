from __future__ import annotations
import secrets, time


def new_job_id() -> str:
    return f"{int(time.time())}-{secrets.token_hex(3)}"
