"""
Process sessions and two-phase termination.

Each shell execution runs in its own process group and is registered
under a session id so it can be killed out of band (timeouts, user
kill requests, shutdown).
"""

import logging
import os
import signal
import subprocess
import threading
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


class ProcessTerminator:
    """
    Two-phase shutdown of a child process group.

    terminate() sends SIGTERM immediately and arms a timer that sends
    SIGKILL after grace_seconds if the process is still alive. It does
    not wait for the process; completion is observed by whoever waits on it.
    """

    def __init__(self, process: subprocess.Popen, grace_seconds: float = 5.0):
        self.process = process
        self.grace_seconds = grace_seconds
        self._lock = threading.Lock()
        self._kill_timer: Optional[threading.Timer] = None
        self._terminating = False
        self._killed = False

    @property
    def terminating(self) -> bool:
        return self._terminating

    @property
    def killed(self) -> bool:
        """True once kill() was requested for this process."""
        return self._killed

    def _signal(self, signum: int):
        # Signal the whole group: the shell may have exited while its
        # children still hold the output pipes.
        try:
            os.killpg(self.process.pid, signum)
        except ProcessLookupError:
            pass  # already gone
        except PermissionError:
            # Process group changed hands; fall back to the direct child.
            self.process.send_signal(signum)

    def terminate(self):
        with self._lock:
            if self._terminating:
                return
            self._terminating = True
            self._signal(signal.SIGTERM)
            self._kill_timer = threading.Timer(self.grace_seconds, self._force_kill)
            self._kill_timer.daemon = True
            self._kill_timer.start()

    def kill(self):
        """Terminate on an explicit kill request. The run is not retried."""
        self._killed = True
        self.terminate()

    def _force_kill(self):
        logger.warning(f"Process group {self.process.pid} still running after SIGTERM, sending SIGKILL")
        self._signal(signal.SIGKILL)

    def cancel(self):
        """Disarm a pending SIGKILL (call once the process has exited)."""
        with self._lock:
            if self._kill_timer is not None:
                self._kill_timer.cancel()
                self._kill_timer = None


class SessionRegistry:
    """Live shell sessions keyed by session id."""

    def __init__(self):
        self._sessions: Dict[str, ProcessTerminator] = {}
        self._lock = threading.Lock()

    def register(self, session_id: str, terminator: ProcessTerminator):
        with self._lock:
            self._sessions[session_id] = terminator

    def unregister(self, session_id: str):
        with self._lock:
            self._sessions.pop(session_id, None)

    def kill_session(self, session_id: str) -> bool:
        """
        Request termination of a session.

        Returns:
            False if the session is unknown (finished or never existed)
        """
        with self._lock:
            terminator = self._sessions.pop(session_id, None)
        if terminator is None:
            return False

        logger.info(f"Killing session {session_id} (pid {terminator.process.pid})")
        terminator.kill()
        return True

    def active_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def kill_all(self) -> int:
        """Terminate every live session. Returns the number signalled."""
        killed = 0
        for session_id in self.active_sessions():
            if self.kill_session(session_id):
                killed += 1
        return killed
