from starlette.requests import HTTPConnection


def get_base_url(conn: HTTPConnection) -> str:
    """
    The externally visible base URL of this server, honouring
    ``X-Forwarded-Proto`` and ``X-Forwarded-Host`` set by a reverse proxy.
    """
    proto = conn.headers.get("x-forwarded-proto", conn.url.scheme).split(",")[0].strip()
    host = conn.headers.get("x-forwarded-host") or conn.headers.get("host") or conn.url.netloc
    return f"{proto}://{host.split(',')[0].strip()}"
