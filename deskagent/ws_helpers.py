"""Shared helpers for the websocket transports (CDP client and relay)."""

from __future__ import annotations


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "DeskAgent requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


__all__ = ["_import_websockets"]
