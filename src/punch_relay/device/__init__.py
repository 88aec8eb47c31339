from punch_relay.device.drivers import (
    DRIVERS,
    DeviceDriver,
    DeviceHandle,
    MockDriver,
    PyzkDriver,
    create_driver,
    is_link_error,
)

__all__ = [
    "DRIVERS",
    "DeviceDriver",
    "DeviceHandle",
    "MockDriver",
    "PyzkDriver",
    "create_driver",
    "is_link_error",
]
