"""
Capability interface shared by every deploy backend.

Two resource families exist:

- ``sandbox``: an ephemeral container that hibernates when idle. Code is uploaded into its
  filesystem and built in place by a generated script run as a long-lived service.
- ``platform``: a VM/image platform. Code is staged, built into an image and released by the
  platform's own tooling; runtime state is exposed as a list of machine instances.

Operations that only make sense for one family raise ``NotImplementedError`` on the other.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

SANDBOX = "sandbox"
PLATFORM = "platform"

BuildCompleteCallback = Callable[[int, str], None]
BuildOutputCallback = Callable[[str], None]


@dataclass
class ResourceInfo:
    name: str
    url: str = ""
    id: Optional[str] = None
    status: Optional[str] = None


@dataclass
class ServiceInfo:
    name: str
    cmd: str
    args: List[str] = field(default_factory=list)
    http_port: Optional[int] = None
    state: Optional[str] = None


@dataclass
class RuntimeInstance:
    id: str
    state: str


class DeploymentBackend(ABC):
    family: str = SANDBOX

    @abstractmethod
    def provision(self, name: str) -> ResourceInfo:
        """Create the resource. Raises ResourceAlreadyExistsError if the name is taken."""

    @abstractmethod
    def get(self, name: str) -> Optional[ResourceInfo]:
        """Return resource info, or None when the backend reports it missing."""

    @abstractmethod
    def set_public(self, name: str) -> None:
        """Expose the resource's public endpoint."""

    @abstractmethod
    def write_file(self, name: str, path: str, data: bytes, mode: Optional[str] = None) -> None:
        ...

    @abstractmethod
    def read_file(self, name: str, path: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def list_runtime_instances(self, name: str) -> List[RuntimeInstance]:
        """Current runtime instances. Raises NotFoundError when the resource itself is gone."""

    def wake(self, name: str) -> bool:
        """Nudge a hibernating resource. Returns True once it answers non-transiently."""
        return True

    # sandbox family

    def put_service(self, name: str, service: str, cmd: str, args: List[str],
                    http_port: Optional[int] = None) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    def start_service(self, name: str, service: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    def stop_service(self, name: str, service: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    def delete_service(self, name: str, service: str) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    def get_service(self, name: str, service: str) -> Optional[ServiceInfo]:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    def get_service_logs(self, name: str, service: str) -> str:
        raise NotImplementedError(f"{type(self).__name__} does not manage services")

    # platform family

    def start_build_and_deploy(
        self,
        name: str,
        source_dir: str,
        secrets: Dict[str, str],
        on_complete: BuildCompleteCallback,
        on_output: Optional[BuildOutputCallback] = None,
    ) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not build images")

    def import_secrets(self, name: str, secrets: Dict[str, str]) -> None:
        raise NotImplementedError(f"{type(self).__name__} does not manage secrets")

    # both

    def get_runtime_logs(self, name: str) -> str:
        """Application logs for the resource; empty when the backend has none."""
        return ""

    def close(self) -> None:
        pass
