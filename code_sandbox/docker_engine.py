from __future__ import annotations

from typing import Any, Iterable, Mapping

import docker
import structlog
from docker.errors import ImageNotFound

from code_sandbox.languages import Language, LanguageRuntime
from code_sandbox.settings import Settings

logger = structlog.get_logger(__name__)


class DockerEngine:
    """Blocking wrapper around one shared docker SDK client.

    The underlying client is a ``requests`` session with a connection pool, so
    one instance can be used from several threads at once. The sandbox runner
    calls it from its own thread pool.
    """

    def __init__(self, client: docker.DockerClient) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "DockerEngine":
        base_url = settings.docker_socket
        if "://" not in base_url:
            base_url = f"unix://{base_url}"
        client = docker.DockerClient(
            base_url=base_url,
            max_pool_size=max(settings.max_concurrent_jobs * 2, 10),
        )
        return cls(client)

    def close(self) -> None:
        self.client.close()

    def ping(self) -> bool:
        return bool(self.client.ping())

    def image_exists(self, image: str) -> bool:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            return False
        return True

    def create(self, options: Mapping[str, Any]) -> str:
        container = self.client.containers.create(**options)
        return container.id

    def start(self, container_id: str) -> None:
        self.client.api.start(container_id)

    def wait(self, container_id: str) -> int:
        response = self.client.api.wait(container_id)
        return int(response.get("StatusCode", -1))

    def logs(self, container_id: str) -> bytes:
        """Raw log stream, still framed with the 8-byte multiplexing headers.

        ``APIClient.logs`` strips the frame headers and merges both streams,
        so the endpoint is read directly.
        """
        api = self.client.api
        # _url adds the negotiated API version prefix; there is no public helper
        response = api.get(
            api._url("/containers/{0}/logs", container_id),
            params={"stdout": 1, "stderr": 1, "follow": 0, "timestamps": 0},
        )
        response.raise_for_status()
        return response.content

    def stats(self, container_id: str) -> dict[str, Any]:
        return self.client.api.stats(container_id, stream=False, one_shot=True)

    def stop(self, container_id: str, timeout: int = 0) -> None:
        self.client.api.stop(container_id, timeout=timeout)

    def remove(self, container_id: str, force: bool = True) -> None:
        self.client.api.remove_container(container_id, force=force)


def missing_images(
    engine: DockerEngine, registry: Mapping[Language, LanguageRuntime]
) -> list[str]:
    """Runner images referenced by the registry that are not present locally."""
    images: Iterable[str] = sorted({runtime.image for runtime in registry.values()})
    missing = [image for image in images if not engine.image_exists(image)]
    for image in missing:
        logger.warning("runner_image_missing", image=image)
    return missing
