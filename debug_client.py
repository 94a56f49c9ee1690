"""
Debug client: developer tool to poke a running server with pymodbus.

Usage:
  python debug_client.py --read-hr 0 4
  python debug_client.py --write-hr 2 4660
  python debug_client.py --write-multi 10 1 2 3
  python debug_client.py --host 127.0.0.1 --port 1502 --read-hr 10 3
"""

from __future__ import annotations

import argparse

from pymodbus.client import ModbusTcpClient

from settings import HOST, PORT


def format_registers(addr: int, registers) -> str:
    lines = [f"HR[{addr}..{addr + len(registers) - 1}] = {list(registers)}"]
    for i, v in enumerate(registers):
        signed = v - 0x10000 if v >= 0x8000 else v
        lines.append(f"  [{addr + i}] raw=0x{v:04X}  u16={v}  i16={signed}")
    return "\n".join(lines)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Debug Modbus TCP client")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--read-hr", nargs=2, type=int, metavar=("ADDR", "COUNT"),
                        help="Read holding registers: addr count")
    parser.add_argument("--write-hr", nargs=2, type=int, metavar=("ADDR", "VALUE"),
                        help="Write single holding register: addr value_u16")
    parser.add_argument("--write-multi", nargs="+", type=int, metavar="ADDR_THEN_VALUES",
                        help="Write multiple holding registers: addr v0 v1 ...")
    args = parser.parse_args(argv)

    client = ModbusTcpClient(args.host, port=args.port)
    if not client.connect():
        print(f"Cannot connect to {args.host}:{args.port}")
        return 1

    status = 0
    try:
        if args.write_hr:
            addr, value = args.write_hr
            rr = client.write_register(addr, value & 0xFFFF)
            if rr.isError():
                print(f"Error: {rr}")
                status = 1
            else:
                print(f"HR[{addr}] written = 0x{value & 0xFFFF:04X}")

        if args.write_multi:
            if len(args.write_multi) < 2:
                parser.error("--write-multi needs an address and at least one value")
            addr, values = args.write_multi[0], [v & 0xFFFF for v in args.write_multi[1:]]
            rr = client.write_registers(addr, values)
            if rr.isError():
                print(f"Error: {rr}")
                status = 1
            else:
                print(f"HR[{addr}..{addr + len(values) - 1}] written = {values}")

        if args.read_hr:
            addr, count = args.read_hr
            rr = client.read_holding_registers(addr, count=count)
            if rr.isError():
                print(f"Error: {rr}")
                status = 1
            else:
                print(format_registers(addr, rr.registers))
    finally:
        client.close()

    return status


if __name__ == "__main__":
    raise SystemExit(main())
