import inspect
import socket

import httpx
import pytest

# Only the two adapter modules may open connections; tests build their own
# clients against mock transports.
ALLOWED_CALLERS = (
    "/tests/",
    "/backend/integrations/brevo_client.py",
    "/agents/dunning/clients.py",
)


def _called_from_allowed_module() -> bool:
    for frame in inspect.stack():
        filename = (frame.filename or "").replace("\\", "/")
        if any(path in filename for path in ALLOWED_CALLERS):
            return True
    return False


@pytest.fixture(autouse=True, scope="session")
def egress_guard():
    real_getaddrinfo = socket.getaddrinfo
    real_create_connection = socket.create_connection
    real_httpx_init = httpx.Client.__init__

    def guard_getaddrinfo(host, *args, **kwargs):
        if not _called_from_allowed_module():
            raise RuntimeError(f"Egress blocked: getaddrinfo({host!r})")
        return real_getaddrinfo(host, *args, **kwargs)

    def guard_create_connection(address, *args, **kwargs):
        if not _called_from_allowed_module():
            raise RuntimeError(f"Egress blocked: create_connection({address!r})")
        return real_create_connection(address, *args, **kwargs)

    def guard_httpx_init(self, *args, **kwargs):
        if not _called_from_allowed_module():
            raise RuntimeError("Egress blocked: httpx.Client not allowed from this callsite")
        return real_httpx_init(self, *args, **kwargs)

    socket.getaddrinfo = guard_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = guard_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = guard_httpx_init  # type: ignore[assignment]

    yield

    socket.getaddrinfo = real_getaddrinfo  # type: ignore[assignment]
    socket.create_connection = real_create_connection  # type: ignore[assignment]
    httpx.Client.__init__ = real_httpx_init  # type: ignore[assignment]
