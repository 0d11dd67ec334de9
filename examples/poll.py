#!/usr/bin/env python3
"""Example: register tags on a controller and print every change until Ctrl+C."""

import logging
import time

from pycip_tags import ControllerManager, Tag


def main() -> None:
    host = "192.168.121.10"  # change to your controller IP
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    with ControllerManager() as manager:
        controller = manager.add_controller(host, poll_interval=0.5)
        controller.on("Connected", lambda c: print(f"Connected to {c.address}"))
        controller.on("Disconnected", lambda: print("Disconnected"))

        def changed(tag: Tag, previous: object) -> None:
            print(f"{tag.full_path}: {previous!r} -> {tag.value!r}")

        controller.on("TagChanged", changed)
        controller.on("TagError", lambda tag, exc: print(f"{tag.full_path}: {exc}"))

        controller.add_tag("TestUDT2[0]", "MainProgram")
        controller.add_tag("TestUDT2[0].UDT1", "MainProgram", array_dims=1, array_size=5)
        status = controller.add_tag("TestUDT2[0].UDT1[0].STRING1", "MainProgram")
        controller.connect()

        try:
            while True:
                time.sleep(5)
                if controller.connected:
                    print(manager.get_all_values())
                status.value = time.ctime()
        except KeyboardInterrupt:
            print("\nStopped.")


if __name__ == "__main__":
    main()
