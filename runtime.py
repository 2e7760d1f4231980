# runtime.py
import logging

import docker
import requests

logger = logging.getLogger(__name__)

NANO_CPUS_PER_CORE = 10 ** 9

_TRANSPORT_ERRORS = (docker.errors.DockerException, requests.exceptions.RequestException)


class ContainerRuntimeError(Exception):
    """Any failure reported by the container runtime."""


class RuntimeUnavailableError(ContainerRuntimeError):
    """The runtime could not be reached at all."""


class Runtime:
    """Container lifecycle operations the scheduler drives.

    Handles are opaque strings. Streams returned by ``pull_image`` and
    ``fetch_logs`` must be fully consumed by the caller; errors surfacing
    while iterating them are raised as ContainerRuntimeError.
    """

    def pull_image(self, ref):
        raise NotImplementedError

    def create_container(self, image, command, cpu_limit, memory_limit):
        raise NotImplementedError

    def start_container(self, handle):
        raise NotImplementedError

    def wait_for_exit(self, handle, timeout=None):
        """Block until the container stops; returns its exit code."""
        raise NotImplementedError

    def fetch_logs(self, handle):
        raise NotImplementedError

    def remove_container(self, handle, force=False):
        raise NotImplementedError


class DockerRuntime(Runtime):
    def __init__(self, api=None, timeout=60):
        if api is None:
            try:
                client = docker.from_env(timeout=timeout)
                client.ping()
            except _TRANSPORT_ERRORS as e:
                raise RuntimeUnavailableError(f"cannot reach Docker daemon: {e}") from e
            api = client.api
        self.api = api

    def pull_image(self, ref):
        try:
            stream = self.api.pull(ref, stream=True, decode=True)
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"pull {ref} failed: {e}") from e
        return self._pull_progress(ref, stream)

    @staticmethod
    def _pull_progress(ref, stream):
        # The daemon reports pull failures inside the stream with HTTP 200
        try:
            for event in stream:
                if isinstance(event, dict) and event.get("error"):
                    raise ContainerRuntimeError(f"pull {ref} failed: {event['error']}")
                yield event
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"pull {ref} failed: {e}") from e

    def create_container(self, image, command, cpu_limit, memory_limit):
        try:
            host_config = self.api.create_host_config(
                mem_limit=memory_limit,
                nano_cpus=cpu_limit * NANO_CPUS_PER_CORE,
            )
            resp = self.api.create_container(
                image=image,
                command=command,
                tty=False,
                host_config=host_config,
            )
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"create container from {image} failed: {e}") from e
        for warning in resp.get("Warnings") or ():
            logger.warning("Docker: %s", warning)
        return resp["Id"]

    def start_container(self, handle):
        try:
            self.api.start(handle)
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"start {handle[:12]} failed: {e}") from e

    def wait_for_exit(self, handle, timeout=None):
        try:
            result = self.api.wait(handle, timeout=timeout, condition="not-running")
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"wait on {handle[:12]} failed: {e}") from e
        error = result.get("Error")
        if error and error.get("Message"):
            raise ContainerRuntimeError(f"wait on {handle[:12]} failed: {error['Message']}")
        return result.get("StatusCode")

    def fetch_logs(self, handle):
        try:
            stream = self.api.logs(handle, stdout=True, stderr=True, stream=True, follow=False)
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"logs of {handle[:12]} failed: {e}") from e
        return self._log_chunks(handle, stream)

    @staticmethod
    def _log_chunks(handle, stream):
        try:
            yield from stream
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"reading logs of {handle[:12]} failed: {e}") from e

    def remove_container(self, handle, force=False):
        try:
            self.api.remove_container(handle, force=force)
        except _TRANSPORT_ERRORS as e:
            raise ContainerRuntimeError(f"remove {handle[:12]} failed: {e}") from e
