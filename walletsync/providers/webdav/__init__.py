from .client import ProbeResult, RemoteObject, WebDavClient

__all__ = ["ProbeResult", "RemoteObject", "WebDavClient"]
