# pyEnvoy Module - Command Line
# -*- coding: utf-8 -*-
"""
 Command Line Functions:
    python -m pyenvoy <serve|scan|get|version>

"""

import argparse
import json
import sys

# Modules
from pyenvoy import version, set_debug

# Global Variables
timeout = 1.0
hosts = 30
ip = None

# Setup parser and groups
p = argparse.ArgumentParser(prog="PyEnvoy", description=f"PyEnvoy Module v{version}")
subparsers = p.add_subparsers(dest="command", title='commands (run <command> -h to see usage information)',
                              required=True)

serve_args = subparsers.add_parser("serve", help='Run the Prometheus exporter')

scan_args = subparsers.add_parser("scan", help='Scan local network for Envoy gateways')
scan_args.add_argument("-timeout", type=float, default=timeout,
                       help=f"Seconds to wait per host [Default={timeout:.1f}]")
scan_args.add_argument("-ip", type=str, default=ip, help="IP address within network to scan.")
scan_args.add_argument("-hosts", type=int, default=hosts,
                       help=f"Number of hosts to scan simultaneously [Default={hosts}]")

get_args = subparsers.add_parser("get", help='Get production and inverter data once')
get_args.add_argument("-format", type=str, default="text", help="Output format: text, json")
get_args.add_argument("-address", type=str, default=None, help="URL of the Envoy gateway")
get_args.add_argument("-serial", type=str, default=None, help="Serial number of the Envoy gateway")

version_args = subparsers.add_parser("version", help='Print version information')

# Add a global debug flag
p.add_argument("-debug", action="store_true", default=False, help="Enable debug output")

if len(sys.argv) == 1:
    p.print_help(sys.stderr)
    sys.exit(1)

# parse args
args = p.parse_args()
command = args.command

# Set Debug Mode
if args.debug:
    set_debug(True)

# Run Exporter
if command == 'serve':
    from pyenvoy.exporter.server import main
    sys.exit(main())

# Run Scan
elif command == 'scan':
    from pyenvoy import scan

    print("pyEnvoy [%s] - Scanner\n" % version)
    gateways = scan.scan(ip=args.ip, max_threads=args.hosts, timeout=args.timeout)
    print("Discovered %d Envoy Gateway(s)" % len(gateways))
    for gateway in gateways:
        print("\t %s [%s] Part %s Firmware %s" % (gateway.ip, gateway.serial, gateway.part_number,
                                                  gateway.firmware))

# Get Production Data
elif command == 'get':
    from dataclasses import asdict
    from pyenvoy import EnvoyClient, EnvoyError, InvalidConfigurationParameter
    from pyenvoy.exporter.config import load_config

    serial = args.serial
    try:
        config = load_config()
        address = args.address or config.address
        serial = serial or config.serial
        client = EnvoyClient(address, serial, username=config.username, password=config.password,
                             jwt=config.jwt, timeout=config.timeout)
        output = {
            'serial': serial,
            'production': [asdict(r) for r in client.fetch_production()],
            'inverters': [asdict(i) for i in client.fetch_inverters()],
        }
    except (InvalidConfigurationParameter, EnvoyError) as exc:
        print("ERROR: %s" % exc)
        sys.exit(1)
    if args.format == 'json':
        print(json.dumps(output, indent=2))
    else:
        print(f"pyEnvoy [{version}] - Gateway {serial}\n")
        for record in output['production']:
            print("  {:<18}{:>10.1f} W {:>14.1f} Wh".format(record['type'], record['w_now'], record['wh_lifetime']))
        print("")
        for inverter in output['inverters']:
            print("  {:<18}{:>10.1f} W".format(inverter['serial_number'], inverter['last_report_watts']))
        print("")

# Print Version
elif command == 'version':
    print("pyEnvoy [%s]" % version)
# Print Usage
else:
    p.print_help()
