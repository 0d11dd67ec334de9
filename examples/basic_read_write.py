#!/usr/bin/env python3
"""Example: one-shot reads and writes with CIPClient."""

import sys

from pycip_tags import CIPClient, ControllerConfig
from pycip_tags.errors import AddressError, PyCIPTagsError, TypeMismatchError


def main() -> None:
    host = "192.168.121.10"  # change to your controller IP
    config = ControllerConfig(slot=0, timeout=3.0)

    try:
        with CIPClient(host, config) as plc:
            count = plc.read("Counter")
            print(f"Counter = {count}")

            plc.write("Program:MainProgram.TestUDT2[0].UDT1[0].STRING1", "Test Completed")
            print(plc.read("TestUDT2[0].UDT1[0].STRING1", program="MainProgram"))

            print(plc.read_many(["Counter", "Recipe[0]", "Recipe[1]"]))
            print(plc.explain("Program:MainProgram.TestUDT2[0].UDT1[0].STRING1"))
    except (AddressError, TypeMismatchError) as e:
        print(f"Bad request: {e}", file=sys.stderr)
        sys.exit(1)
    except PyCIPTagsError as e:
        print(f"Controller/connection error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
