#!/usr/bin/env python3

"""CLI tool to list serial ports and/or keep a watched connection to one"""

import argparse
import logging
import ok_logging_setup
import re
import sys
import threading
import typing

import steady_serial

ok_logging_setup.skip_traceback_for(steady_serial.SerialScanException)
ok_logging_setup.skip_traceback_for(steady_serial.SerialOpenException)


def main():
    parser = argparse.ArgumentParser()
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List known serial ports")
    list_parser.add_argument(
        "--verbose", "-v", action="store_true", help="print detailed properties"
    )

    mon_parser = subparsers.add_parser("monitor", help="Watch one serial port")
    mon_parser.add_argument("port", help="device path or pyserial URL")
    mon_parser.add_argument("--baud", "-b", type=int, default=115200)
    mon_parser.add_argument(
        "--strategy",
        "-s",
        choices=typing.get_args(steady_serial.ReadStrategyType),
        default="async_with_sync_fallback",
        help="read path strategy",
    )
    mon_parser.add_argument(
        "--pins", action="store_true", help="report CTS/DSR/CD/RI changes"
    )
    mon_parser.add_argument("--dtr", action="store_true", help="assert DTR")
    mon_parser.add_argument("--rts", action="store_true", help="assert RTS")
    mon_parser.add_argument("--send", help="text to send once connected")
    mon_parser.add_argument(
        "--hex", action="store_true", help="print received data as hex"
    )

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["list"])

    ok_logging_setup.install({"OK_LOGGING_LEVEL": "info"})

    if args.command == "list":
        run_list(verbose=args.verbose)
    elif args.command == "monitor":
        run_monitor(args)


def run_list(verbose: bool):
    logging.info("🔎 Finding serial ports...")
    found = steady_serial.scan_serial_ports()
    if not found:
        ok_logging_setup.exit("❌ No serial ports found")

    num = len(found)
    logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
    for port in found:
        if verbose:
            print(format_detail(port), end="\n\n")
        else:
            print(port)


def run_monitor(args: argparse.Namespace):
    opts = steady_serial.PortOptions(
        name=args.port,
        baud=args.baud,
        read_strategy=steady_serial.ReadStrategyOptions(mode=args.strategy),
        dtr=args.dtr,
        rts=args.rts,
        auto_dtr_on_connect=args.dtr,
        auto_rts_on_connect=args.rts,
        monitor_pins=args.pins,
    )
    config = steady_serial.RegistryOptions(ports={args.port: opts})
    with steady_serial.SerialPortRegistry(config) as registry:

        def on_status(event: steady_serial.ConnectionStatusChanged):
            if event.is_connected:
                logging.info("✅ %s connected", event.port_name)
                if args.send:
                    registry.send(event.port_name, args.send.encode())
            else:
                logging.warning("🔌 %s disconnected", event.port_name)

        def on_data(event: steady_serial.DataReceived):
            if args.hex:
                print(event.data.hex(" "), flush=True)
            else:
                sys.stdout.write(event.data.decode(errors="replace"))
                sys.stdout.flush()

        def on_pins(event: steady_serial.PinChanged):
            pins = event.pins
            logging.info(
                "📍 %s %s: CTS=%d DSR=%d CD=%d RI=%d",
                event.port_name,
                event.kind.upper(),
                pins.cts_holding,
                pins.dsr_holding,
                pins.cd_holding,
                pins.ring_indicator,
            )

        registry.status_changed += on_status
        registry.data_received += on_data
        registry.pin_changed += on_pins

        logging.info("⏳ Connecting to %s (%d baud)", args.port, args.baud)
        if not registry.connect(args.port):
            logging.warning("⚠️ %s not there yet, will retry", args.port)

        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            logging.info("👋 Closing %s", args.port)


def format_detail(port: steady_serial.SerialPort) -> str:
    return f"Port: {port.name}" + "".join(
        f"\n  {k}={format_value(v)}" for k, v in port.attr.items()
    )


def format_value(v: str) -> str:
    return repr(v) if re.search(r"""[\s!"'*=?\\]""", v) else v


if __name__ == "__main__":
    main()
