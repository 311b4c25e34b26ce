"""
auth/devices.py -- Device registry: binds login attempts to stable client identities.

Resolution order for validate_and_create_or_update():
  1. uuid supplied     -> must resolve to a device owned by this user, which is
                          updated in place. A uuid that does not resolve is
                          stale or tampered with and raises InvalidDevice; it
                          is never promoted to a new device.
  2. push token given  -> a device of this user with the same firebase_token
                          is a re-install / re-registration; update it.
  3. otherwise         -> insert a new device with a fresh uuid4.

Only whitelisted fields are copied from client-supplied device data.
"""

from __future__ import annotations

import logging
import uuid as uuid_lib

from auth.errors import InvalidDevice
from auth.models import UserDevice
from auth.store import UserStore

logger = logging.getLogger("codegate.auth.devices")

DEVICE_FIELDS = (
    "name",
    "os",
    "os_version",
    "app_version",
    "device_type",
    "device_token",
    "firebase_token",
    "ip",
)

_DEFAULT_DEVICE_NAME = "Unknown device"


def _filter_device_data(device_data: dict) -> dict:
    return {k: device_data[k] for k in DEVICE_FIELDS if device_data.get(k) is not None}


class DeviceRegistry:
    def __init__(self, store: UserStore) -> None:
        self.store = store

    def validate_and_create_or_update(self, user_id: int, device_data: dict) -> UserDevice:
        fields = _filter_device_data(device_data)
        supplied_uuid = device_data.get("uuid")

        if supplied_uuid:
            device = self.store.get_device_by_uuid(str(supplied_uuid), user_id)
            if device is None:
                logger.warning("Rejected unknown device uuid for user %s", user_id)
                raise InvalidDevice()
            return self._update(device, fields)

        push_token = fields.get("firebase_token")
        if push_token:
            device = self.store.get_device_by_push_token(push_token, user_id)
            if device is not None:
                return self._update(device, fields)

        device = UserDevice(
            user_id=user_id,
            uuid=str(uuid_lib.uuid4()),
            name=fields.pop("name", None) or _DEFAULT_DEVICE_NAME,
            active=True,
            **fields,
        )
        device.id = self.store.create_device(device)
        logger.info("Registered device %s for user %s", device.id, user_id)
        return self.store.get_device(device.id) or device

    def _update(self, device: UserDevice, fields: dict) -> UserDevice:
        if fields:
            self.store.update_device(device.id, **fields)
        return self.store.get_device(device.id) or device

    def get_device(self, user_id: int, device_uuid: str) -> UserDevice | None:
        return self.store.get_device_by_uuid(device_uuid, user_id)

    def list_devices(self, user_id: int) -> list[UserDevice]:
        return self.store.list_devices(user_id)

    def deactivate(self, user_id: int, device_uuid: str) -> UserDevice:
        """Mark a device inactive. Raises InvalidDevice if it is not this user's."""
        device = self.store.get_device_by_uuid(device_uuid, user_id)
        if device is None:
            raise InvalidDevice()
        self.store.update_device(device.id, active=False)
        return self.store.get_device(device.id) or device
