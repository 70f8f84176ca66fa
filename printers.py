"""
Print-target selection from the cached printer table.

`system_name` on a cached printer is the OS device the till prints to
(e.g. COM3 or /dev/ttyUSB0); pyserial tells us which of those are attached.
"""
import logging
from typing import Any, Dict, List, Optional, Set

from serial.tools import list_ports

from offline_store import LocalStore

logger = logging.getLogger(__name__)


def available_ports() -> List[Dict[str, str]]:
    """Serial/COM ports currently visible to this machine."""
    ports = []
    for port in list_ports.comports():
        ports.append({
            'device': port.device or '',
            'description': port.description or '',
            'hwid': port.hwid or '',
        })
    return ports


def _attached_devices() -> Set[str]:
    try:
        return {p['device'] for p in available_ports() if p['device']}
    except Exception as exc:
        logger.warning("Serial port discovery failed: %s", exc)
        return set()


def select_printer(store: LocalStore, attached_only: bool = False) -> Optional[Dict[str, Any]]:
    """Default printer if there is one, else the first cached printer.

    With attached_only, printers whose device is not plugged in are skipped.
    """
    printers = store.list_printers()
    if attached_only:
        attached = _attached_devices()
        printers = [p for p in printers if p.get('system_name') in attached]
    for printer in printers:
        if printer.get('is_default'):
            return printer
    return printers[0] if printers else None
