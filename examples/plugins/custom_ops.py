"""
Example plugin module for provision.

Drop this file into a plugin directory (see engine.plugin_dirs in
provision.toml) or make it importable (engine.plugin_modules) and it registers
an ``http_check`` operation that waits for a URL to answer, e.g. DHIS2 after
Tomcat has deployed the WAR:

    [[actions]]
    id = "dhis2_up"
    type = "http_check"
    url = "http://localhost:8080/dhis/"
    depends_on = ["tomcat_service"]
"""

import time

from provision_automation.errors import ActionError
from provision_automation.operations.base import Operation
from provision_automation.types import ProbeStatus


class HttpCheckOperation(Operation):
    name = "http_check"

    def __init__(self, spec: dict):
        super().__init__(spec)
        if not spec.get("url"):
            raise ValueError("http_check requires a url")
        self.url = str(spec["url"])
        self.wait = float(spec.get("wait", 300))
        self.interval = float(spec.get("interval", 5))

    def resource(self):
        return self.url

    def probe(self, state):
        return ProbeStatus.PRESENT if self._answers(state) else ProbeStatus.ABSENT

    def apply(self, state):
        if state.dry_run:
            return self._result(state, False, "dry-run")
        deadline = time.monotonic() + self.wait
        while time.monotonic() < deadline:
            if self._answers(state):
                return self._result(state, False, "answering")
            time.sleep(self.interval)
        raise ActionError(f"{self.url} did not answer within {self.wait:g}s")

    def _answers(self, state) -> bool:
        result = state.query(["curl", "-fsS", "-o", "/dev/null", "--max-time", "10", self.url])
        return result.returncode == 0


def register_operations(registry) -> None:
    registry["http_check"] = HttpCheckOperation
