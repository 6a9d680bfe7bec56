"""
RunningInstance: one launched container and its readiness state machine.

States:
    CREATED -> STARTED -> READY
                       -> UNHEALTHY
                       -> TIMED_OUT
    DESTROYED is reachable from any state.

Readiness is a single wait loop that observes both the poll result and the
deadline, so exactly one outcome ends the wait:
- health status "healthy"   -> READY
- health status "unhealthy" -> UNHEALTHY, fail immediately
- deadline reached first    -> TIMED_OUT, fail

Usage:
    with RunningInstance(built.tag, label="simple_app",
                         health_check=HealthCheck(command="curl -f localhost:8080/")) as app:
        app.start()
        app.http_get("/")
"""

from __future__ import annotations

import logging
import re
import time
from enum import Enum
from typing import Callable, Dict, List, Optional

import httpx

from cnbdagger.config import Settings, get_settings
from cnbdagger.exceptions import (
    ExternalProcessError,
    InstanceError,
    ReadinessTimeoutError,
    TeardownError,
    UnhealthyInstanceError,
)
from cnbdagger.executable import Runner
from cnbdagger.models import HealthCheck
from cnbdagger.probe import HTTPProbe
from cnbdagger.runtime import runtime_executable

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"

# Container states that can never turn healthy
_DEAD_STATES = {"exited", "dead", "removing"}

_CONTAINER_ID = re.compile(r"^[0-9a-f]{12,64}$")


class InstanceState(str, Enum):
    CREATED = "created"
    STARTED = "started"
    READY = "ready"
    UNHEALTHY = "unhealthy"
    TIMED_OUT = "timed_out"
    DESTROYED = "destroyed"


def _seconds(value: float) -> str:
    return f"{value:g}s"


def _parse_container_id(output: str) -> Optional[str]:
    """Short container id from `run -d` output, if one was printed."""
    for line in output.splitlines():
        line = line.strip()
        if _CONTAINER_ID.match(line):
            return line[:12]
    return None


class RunningInstance:
    """
    Exclusively owned container launched from an image.

    The owner must call destroy() (or use the instance as a context
    manager). When owns_image is True, destroy() also removes the image and
    prunes dangling images; pass False for a pre-existing image.
    """

    def __init__(
        self,
        image: str,
        *,
        label: str = "",
        health_check: Optional[HealthCheck] = None,
        env: Optional[Dict[str, str]] = None,
        port: Optional[str] = None,
        owns_image: bool = True,
        settings: Optional[Settings] = None,
        runtime: Optional[Runner] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        http_transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.image = image
        self.label = label or image
        self.health_check = health_check
        self.env = dict(env or {})
        self.owns_image = owns_image
        self._port_spec = port
        self._settings = settings or get_settings()
        self._runtime = runtime or runtime_executable(self._settings)
        self._clock = clock
        self._sleep = sleep
        self._http_transport = http_transport

        self.state = InstanceState.CREATED
        self.container_id: Optional[str] = None
        self.host_port: Optional[str] = None
        self.polls = 0
        self._image_present = owns_image

    # =========================================================================
    # Start and readiness
    # =========================================================================

    def start(self) -> "RunningInstance":
        """
        Launch the container, wait for readiness and resolve the endpoint.

        Raises:
            ExternalProcessError: If the runtime fails to launch the container.
                A container id printed before the failure is still recorded
                so destroy() can remove it.
            UnhealthyInstanceError: If the container reports unhealthy
            ReadinessTimeoutError: If the deadline elapses first
        """
        if self.state != InstanceState.CREATED:
            raise InstanceError(
                f"cannot start instance {self.label} in state {self.state.value}",
                label=self.label,
                state=self.state.value,
            )

        try:
            result = self._runtime.execute(*self._run_args())
        except ExternalProcessError as exc:
            # The runtime may have created the container before failing to start it
            self.container_id = _parse_container_id(exc.stdout)
            if self.container_id:
                logger.warning(
                    "Container %s for %s created but not started", self.container_id, self.label
                )
            raise
        self.container_id = _parse_container_id(result.stdout)
        if not self.container_id:
            raise InstanceError(
                f"runtime returned no container id for {self.label}",
                label=self.label,
                state=self.state.value,
            )
        self.state = InstanceState.STARTED
        logger.info("Started %s as container %s", self.label, self.container_id)

        self.wait_until_ready()
        self.host_port = self._resolve_port()
        logger.info("%s ready at %s", self.label, self.url)
        return self

    def _run_args(self) -> List[str]:
        args = ["run", "-d", "-P"]
        hc = self.health_check
        if hc is not None:
            args += [
                "--health-cmd", hc.command,
                "--health-interval", _seconds(hc.interval),
                "--health-timeout", _seconds(hc.timeout),
            ]
            if hc.retries is not None:
                args += ["--health-retries", str(hc.retries)]
        for key in sorted(self.env):
            args += ["-e", f"{key}={self.env[key]}"]
        args.append(self.image)
        return args

    def health_status(self) -> str:
        """
        Query the runtime once.

        With a health-check policy this is the health status (starting,
        healthy, unhealthy). Without one, a running container counts as
        healthy and a stopped one as unhealthy.
        """
        template = "{{.State.Health.Status}}" if self.health_check else "{{.State.Status}}"
        result = self._runtime.execute("inspect", "-f", template, self._require_container())
        status = result.stdout.strip().lower()
        if self.health_check is None:
            if status == "running":
                return HEALTHY
            if status in _DEAD_STATES:
                return UNHEALTHY
        return status

    def wait_until_ready(
        self,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> None:
        """
        Poll health every interval until healthy, unhealthy or timeout.

        The deadline is measured from the start of the wait. Sleeps never
        overshoot it, so a timeout is reported at the deadline and not a
        polling interval later.
        """
        timeout = self._settings.ready_timeout if timeout is None else timeout
        interval = self._settings.poll_interval if interval is None else interval
        deadline = self._clock() + timeout

        logger.info("Waiting for %s to become healthy (timeout %gs)", self.label, timeout)
        while True:
            status = self.health_status()
            self.polls += 1

            if status == HEALTHY:
                self.state = InstanceState.READY
                return
            if status == UNHEALTHY:
                self.state = InstanceState.UNHEALTHY
                raise UnhealthyInstanceError(
                    f"instance {self.label} reported unhealthy",
                    label=self.label,
                    container_id=self.container_id,
                    state=self.state.value,
                )

            remaining = deadline - self._clock()
            if remaining <= 0:
                self.state = InstanceState.TIMED_OUT
                raise ReadinessTimeoutError(
                    f"instance {self.label} not healthy after {timeout:g}s (last status {status!r})",
                    label=self.label,
                    container_id=self.container_id,
                    state=self.state.value,
                    timeout=timeout,
                    polls=self.polls,
                )
            self._sleep(min(interval, remaining))

    def _resolve_port(self) -> str:
        args = ["port", self._require_container()]
        if self._port_spec:
            args.append(self._port_spec)
        result = self._runtime.execute(*args)
        # "8080/tcp -> 0.0.0.0:32768" or, with a port spec, "0.0.0.0:32768"
        for line in result.stdout.splitlines():
            mapping = line.split("->")[-1].strip()
            if ":" in mapping:
                port = mapping.rsplit(":", 1)[1].strip()
                if port:
                    return port
        raise InstanceError(
            f"no published port for {self.label}: {result.stdout.strip()!r}",
            label=self.label,
            container_id=self.container_id,
            state=self.state.value,
        )

    def _require_container(self) -> str:
        if not self.container_id:
            raise InstanceError(
                f"instance {self.label} has no container",
                label=self.label,
                state=self.state.value,
            )
        return self.container_id

    # =========================================================================
    # Endpoint
    # =========================================================================

    @property
    def endpoint(self) -> Optional[str]:
        """host:port of the primary published port, once ready."""
        if self.host_port is None:
            return None
        return f"localhost:{self.host_port}"

    @property
    def url(self) -> Optional[str]:
        if self.endpoint is None:
            return None
        return f"http://{self.endpoint}"

    def probe(self) -> HTTPProbe:
        if self.state != InstanceState.READY or self.url is None:
            raise InstanceError(
                f"instance {self.label} is not ready",
                label=self.label,
                container_id=self.container_id,
                state=self.state.value,
            )
        return HTTPProbe(
            self.url,
            timeout=self._settings.probe_timeout,
            transport=self._http_transport,
        )

    def http_get(self, path: str = "/") -> httpx.Response:
        """GET path on the instance; raises ProbeError unless 2xx."""
        with self.probe() as probe:
            return probe.get(path)

    # =========================================================================
    # Teardown
    # =========================================================================

    def destroy(self) -> None:
        """
        Stop and remove the container, then remove the owned image.

        Every step is attempted even if an earlier one fails. Safe to call
        repeatedly and on an instance that never started.

        Raises:
            TeardownError: If any step failed. Steps that failed are retried
                by the next call.
        """
        errors: List[tuple[str, BaseException]] = []

        if self.container_id:
            container = self.container_id
            try:
                self._runtime.execute("stop", container)
            except ExternalProcessError as exc:
                logger.warning("Failed to stop %s (%s): %s", container, self.label, exc)
                errors.append((f"stop {container}", exc))
            try:
                self._runtime.execute("rm", "-f", container)
                self.container_id = None
                self.host_port = None
            except ExternalProcessError as exc:
                logger.warning("Failed to remove %s (%s): %s", container, self.label, exc)
                errors.append((f"rm {container}", exc))

        if self._image_present:
            try:
                self._runtime.execute("rmi", "-f", self.image)
                self._image_present = False
            except ExternalProcessError as exc:
                logger.warning("Failed to remove image %s: %s", self.image, exc)
                errors.append((f"rmi {self.image}", exc))
            try:
                self._runtime.execute("image", "prune", "-f")
            except ExternalProcessError as exc:
                logger.warning("Failed to prune dangling images: %s", exc)
                errors.append(("image prune", exc))

        if errors:
            raise TeardownError(f"teardown of {self.label} incomplete", errors=errors)
        if self.state != InstanceState.DESTROYED:
            logger.debug("Destroyed %s", self.label)
        self.state = InstanceState.DESTROYED

    def __enter__(self) -> "RunningInstance":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.destroy()

    def __repr__(self) -> str:
        return (
            f"RunningInstance(label={self.label!r}, image={self.image!r}, "
            f"container={self.container_id!r}, state={self.state.value})"
        )
