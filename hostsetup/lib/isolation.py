from __future__ import annotations

import logging
import multiprocessing
import signal
from typing import Any, Callable, Optional

from ..errors import StepTimeoutError

logger = logging.getLogger(__name__)

KILL_GRACE_S = 5.0


def _mp_context():
    methods = multiprocessing.get_all_start_methods()
    return multiprocessing.get_context("fork" if "fork" in methods else "spawn")


def _child(conn, fn: Callable[[Any], Optional[bool]], arg: Any) -> None:
    # A forked child inherits the parent's cancel handlers; terminate() must kill it.
    signal.signal(signal.SIGINT, signal.SIG_DFL)
    signal.signal(signal.SIGTERM, signal.SIG_DFL)
    try:
        result = fn(arg)
        conn.send(("ok", None if result is None else bool(result)))
    except BaseException as e:  # report everything to the parent, including SystemExit
        conn.send(("error", f"{type(e).__name__}: {e}"))
    finally:
        conn.close()


def run_isolated(
    fn: Callable[[Any], Optional[bool]],
    arg: Any,
    *,
    timeout_s: float,
    name: str,
) -> Optional[bool]:
    """Run fn(arg) in a child process, terminating it after timeout_s.

    Only the return value crosses back; in-memory changes the child makes to
    `arg` are not visible to the caller.
    """

    ctx = _mp_context()
    parent_conn, child_conn = ctx.Pipe(duplex=False)
    proc = ctx.Process(target=_child, args=(child_conn, fn, arg), name=f"step-{name}", daemon=True)
    proc.start()
    child_conn.close()

    try:
        if not parent_conn.poll(timeout_s):
            logger.error("Step %s exceeded %ss; terminating pid %s", name, timeout_s, proc.pid)
            proc.terminate()
            proc.join(KILL_GRACE_S)
            if proc.is_alive():
                proc.kill()
                proc.join()
            raise StepTimeoutError(name, timeout_s)

        try:
            kind, payload = parent_conn.recv()
        except EOFError as e:
            proc.join()
            raise RuntimeError(f"Step {name} worker exited ({proc.exitcode}) without a result") from e
        proc.join()
    finally:
        parent_conn.close()

    if kind == "error":
        raise RuntimeError(payload)
    return payload
