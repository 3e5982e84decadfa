"""Device resource context: one backend, its queue, and every buffer it allocated."""

from __future__ import annotations

import logging

from xcorr_runtime.backend import Backend, DeviceBuffer
from xcorr_runtime.errors import SequencingError

logger = logging.getLogger(__name__)

BACKENDS = ("cuda", "host")


def create_backend(kind: str = "cuda", device_id: int = 0) -> Backend:
    """Instantiate a backend by name."""
    if kind == "cuda":
        from xcorr_runtime.cuda_backend import CUDABackend

        return CUDABackend(device_id)
    if kind == "host":
        from xcorr_runtime.host_backend import HostBackend

        return HostBackend()
    raise ValueError(f"Unknown backend '{kind}', expected one of {BACKENDS}")


class DeviceContext:
    """Lifetime scope for a backend and its device buffers.

    close() releases any buffer still owned, then the backend. It is safe
    to call more than once.
    """

    def __init__(self, backend: Backend):
        self._backend = backend
        self._buffers: dict[int, DeviceBuffer] = {}
        self._closed = False

    @property
    def backend(self) -> Backend:
        if self._closed:
            raise SequencingError("device context is closed")
        return self._backend

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def live_buffers(self) -> list[DeviceBuffer]:
        return list(self._buffers.values())

    def device_info(self) -> dict[str, str]:
        return self.backend.device_info()

    def allocate(self, name: str, size_bytes: int) -> DeviceBuffer:
        buffer = self.backend.allocate(name, size_bytes)
        self._buffers[id(buffer)] = buffer
        return buffer

    def release(self, buffer: DeviceBuffer) -> None:
        """Release a buffer owned by this context; a second release is a no-op."""
        if self._buffers.pop(id(buffer), None) is None:
            return
        self._backend.release(buffer)

    def close(self) -> None:
        if self._closed:
            return
        for buffer in list(self._buffers.values()):
            self.release(buffer)
        self._backend.close()
        self._closed = True
        logger.info("closed %s device context", self._backend.name)

    def __enter__(self) -> DeviceContext:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def open_context(kind: str = "cuda", device_id: int = 0) -> DeviceContext:
    """Bootstrap helper: backend + context in one call."""
    return DeviceContext(create_backend(kind, device_id))
