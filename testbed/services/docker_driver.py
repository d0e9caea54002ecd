"""Environment driver over the Docker SDK."""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Dict, List, Optional

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from testbed.config import settings
from testbed.errors import EnvironmentDriverError

logger = logging.getLogger(__name__)

# Failures surfaced by the SDK and its HTTP transport
DRIVER_ERRORS = (DockerException, requests.exceptions.RequestException)

_END_OF_STREAM = object()


def _wrap(action: str, error: Exception) -> EnvironmentDriverError:
    not_found = isinstance(error, (NotFound, ImageNotFound))
    return EnvironmentDriverError(f"Failed to {action}: {error}", not_found=not_found)


class DockerDriver:
    """
    Thin async adapter over the Docker daemon.

    The SDK is blocking; every call runs in a worker thread so one run
    waiting on its container never blocks another run or the HTTP loop.
    Handles are container ids.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        connect_attempts: Optional[int] = None,
        client: Optional[docker.DockerClient] = None,
    ):
        """Initialize the driver. The daemon connection is opened lazily."""
        self.base_url = base_url if base_url is not None else settings.DOCKER_BASE_URL
        self.timeout = timeout or settings.DOCKER_TIMEOUT
        self.connect_attempts = connect_attempts or settings.DOCKER_CONNECT_ATTEMPTS
        self._client = client
        self._client_lock = threading.Lock()

    def _connect(self) -> docker.DockerClient:
        @retry(
            stop=stop_after_attempt(self.connect_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=5),
            retry=retry_if_exception_type(DRIVER_ERRORS),
            reraise=True,
        )
        def connect() -> docker.DockerClient:
            if self.base_url:
                client = docker.DockerClient(base_url=self.base_url, timeout=self.timeout)
            else:
                client = docker.from_env(timeout=self.timeout)
            client.ping()
            return client

        try:
            client = connect()
        except DRIVER_ERRORS as e:
            raise _wrap("connect to Docker daemon", e)
        logger.info("Connected to Docker daemon")
        return client

    def _get_client(self) -> docker.DockerClient:
        # Runs starting together share one connection attempt
        with self._client_lock:
            if self._client is None:
                self._client = self._connect()
            return self._client

    async def _call(self, action: str, fn, *args, **kwargs) -> Any:
        """Run a blocking SDK call in a thread, translating its failures."""

        def invoke():
            return fn(self._get_client(), *args, **kwargs)

        try:
            return await asyncio.to_thread(invoke)
        except EnvironmentDriverError:
            raise
        except DRIVER_ERRORS as e:
            raise _wrap(action, e)

    async def create_environment(
        self,
        image: str,
        name: str,
        command: List[str],
        binds: List[str],
        tty: bool = True,
    ) -> str:
        """
        Create (but do not start) a container.

        Args:
            image: Image reference
            name: Container name; collisions are errors
            command: Container argv
            binds: host:container bind mount specs
            tty: Allocate a TTY so output is delivered unbuffered

        Returns:
            Container id
        """

        def create(client):
            container = client.containers.create(
                image,
                command,
                name=name,
                tty=tty,
                volumes=binds,
                auto_remove=False,
            )
            return container.id

        handle = await self._call(f"create container {name} from {image}", create)
        logger.info(f"Created container {name} ({handle[:12]}) from {image}")
        return handle

    async def start_environment(self, handle: str) -> None:
        """Start a created container. Starting an already started one is an error."""

        def start(client):
            container = client.containers.get(handle)
            container.reload()
            if container.status != "created":
                raise EnvironmentDriverError(
                    f"Container {handle[:12]} cannot be started from state '{container.status}'"
                )
            container.start()

        await self._call(f"start container {handle[:12]}", start)
        logger.info(f"Started container {handle[:12]}")

    async def attach_output_stream(self, handle: str) -> AsyncIterator[bytes]:
        """
        Yield output chunks as the container produces them.

        The stream cannot be restarted and ends when the container's output
        closes. Output produced before attaching is replayed.
        """
        stream = await self._call(
            f"attach to container {handle[:12]}",
            lambda client: client.containers.get(handle).attach(
                stdout=True, stderr=True, stream=True, logs=True
            ),
        )
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(next, stream, _END_OF_STREAM)
                except DRIVER_ERRORS as e:
                    raise _wrap(f"read output of container {handle[:12]}", e)
                if chunk is _END_OF_STREAM:
                    break
                yield chunk
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    async def await_completion(self, handle: str) -> int:
        """Block until the container exits and return its exit code."""
        result = await self._call(
            f"wait for container {handle[:12]}",
            lambda client: client.containers.get(handle).wait(),
        )
        if result.get("Error"):
            logger.warning(f"Container {handle[:12]} wait reported: {result['Error']}")
        return int(result["StatusCode"])

    async def fetch_logs(self, handle: str) -> bytes:
        """Whatever output the runtime retained for the container."""
        return await self._call(
            f"fetch logs of container {handle[:12]}",
            lambda client: client.containers.get(handle).logs(stdout=True, stderr=True),
        )

    async def destroy_environment(self, handle: str) -> None:
        """Remove a container. Best-effort: failures are logged, never raised."""
        try:
            await self._call(
                f"remove container {handle[:12]}",
                lambda client: client.containers.get(handle).remove(force=True),
            )
            logger.info(f"Removed container {handle[:12]}")
        except EnvironmentDriverError as e:
            logger.warning(str(e))

    async def stop_environment(self, handle: str) -> None:
        await self._call(
            f"stop container {handle[:12]}",
            lambda client: client.containers.get(handle).stop(),
        )
        logger.info(f"Stopped container {handle[:12]}")

    async def remove_environment(self, handle: str, force: bool = False) -> None:
        """Remove a container, raising on failure (out-of-band maintenance)."""
        await self._call(
            f"remove container {handle[:12]}",
            lambda client: client.containers.get(handle).remove(force=force),
        )
        logger.info(f"Removed container {handle[:12]}")

    async def list_images(self) -> List[Dict[str, Any]]:
        def list_images(client):
            images = []
            for image in client.images.list():
                attrs = image.attrs
                images.append(
                    {
                        "id": image.short_id.split(":", 1)[-1],
                        "repo_tags": image.tags or ["<none>:<none>"],
                        "created": attrs.get("Created"),
                        "size_mb": round(attrs.get("Size", 0) / (1024 * 1024), 2),
                    }
                )
            return images

        return await self._call("list images", list_images)

    async def pull_image(self, image: str) -> str:
        """Pull an image and return its first tag (or the requested reference)."""

        def pull(client):
            repository, _, tag = image.rpartition(":")
            if not repository or "/" in tag:
                repository, tag = image, "latest"
            pulled = client.images.pull(repository, tag=tag)
            return pulled.tags[0] if pulled.tags else image

        logger.info(f"Pulling image {image}")
        return await self._call(f"pull image {image}", pull)

    async def list_containers(self, all: bool = True) -> List[Dict[str, Any]]:
        def list_containers(client):
            return [
                {
                    "id": c.short_id,
                    "name": c.name,
                    "image": c.attrs.get("Config", {}).get("Image"),
                    "status": c.status,
                }
                for c in client.containers.list(all=all)
            ]

        return await self._call("list containers", list_containers)
