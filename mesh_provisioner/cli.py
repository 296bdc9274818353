#!/usr/bin/env python3
"""
Mesh shell provisioner: commissions nodes through a serial Zephyr mesh gateway

Usage:
    mesh-provisioner --port /dev/ttyACM0               # TUI interactive mode (default)
    mesh-provisioner --list-ports                      # List serial ports
    mesh-provisioner --port COM5 --init                # Initialize gateway as provisioner
    mesh-provisioner --port COM5 --discover            # One discovery/commission cycle
    mesh-provisioner --port COM5 --no-tui              # Plain CLI prompt
    mesh-provisioner --port COM5 --web                 # TUI + web dashboard
    mesh-provisioner --port COM5 --web-only            # Web dashboard only

Commands are single text lines written to the gateway shell; responses are
free text scanned for beacon and address reports.
"""

import argparse
import asyncio
from pathlib import Path

from mesh_provisioner import db
from mesh_provisioner.constants import DEFAULT_BAUD
from mesh_provisioner.controller import MeshProvisioner
from mesh_provisioner.sequencer import ProvisioningSequencer
from mesh_provisioner.transport import list_ports

# Check for textual
_HAS_TEXTUAL = False
try:
    from mesh_provisioner.tui_app import ProvisionerApp
    _HAS_TEXTUAL = True
except ImportError:
    print("Note: textual not available. Install with: pip install textual")
    print("      Falling back to plain CLI mode.\n")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Mesh shell provisioner")
    parser.add_argument("--port", type=str, help="Serial port of the gateway")
    parser.add_argument("--baud", type=int, default=DEFAULT_BAUD, help="Baud rate")
    parser.add_argument("--list-ports", action="store_true", help="List serial ports")
    parser.add_argument("--timeout", type=int, default=100,
                        help="Response wait per command, msec (default 100)")
    parser.add_argument("--listen", type=float, default=ProvisioningSequencer.LISTEN_WINDOW,
                        help="Seconds a discovery cycle listens for beacons")
    parser.add_argument("--discover", action="store_true",
                        help="Run one discovery/commission cycle and exit")
    parser.add_argument("--init", action="store_true",
                        help="Initialize the gateway as provisioner and exit")
    parser.add_argument("--db", type=str, default=None,
                        help="SQLite file for commissioned nodes (enables persistence)")
    parser.add_argument("--reassemble", action="store_true",
                        help="Carry partial beacon lines over to the next read cycle")
    parser.add_argument("--ack", action="store_true",
                        help="End the provisioning wait on the gateway's completion line")
    parser.add_argument("--no-tui", action="store_true",
                        help="Use plain CLI mode instead of TUI")
    parser.add_argument("--web", action="store_true",
                        help="Enable web dashboard alongside TUI")
    parser.add_argument("--web-only", action="store_true",
                        help="Web dashboard only, no TUI")
    parser.add_argument("--web-port", type=int, default=8000,
                        help="Web dashboard port (default 8000)")
    return parser


def build_controller(args) -> MeshProvisioner:
    controller = MeshProvisioner(response_timeout=args.timeout / 1000.0,
                                 acknowledged=args.ack, reassemble=args.reassemble)
    controller.sequencer.LISTEN_WINDOW = args.listen
    if args.db:
        db.DB_PATH = Path(args.db)
    controller.start(persist=bool(args.db))
    return controller


def main():
    """Entry point: decides between TUI, web and CLI mode."""
    parser = build_parser()
    args = parser.parse_args()

    if args.list_ports:
        ports = list_ports()
        print("\n".join(ports) if ports else "No serial ports found")
        return

    if not args.port:
        parser.error("--port is required (see --list-ports)")

    is_oneshot = args.discover or args.init

    if args.web_only:
        _run_web_only(args)
        return

    # Textual's app.run() manages its own event loop, so call it directly (not from asyncio.run)
    if _HAS_TEXTUAL and not is_oneshot and not args.no_tui:
        from mesh_provisioner.io_thread import IoThread

        controller = build_controller(args)
        io = IoThread()
        io.start()
        if args.web:
            from mesh_provisioner import web_server
            web_server.set_controller(controller)
            controller._web_enabled = True
            io.submit(_serve_web(args.web_port))

        app = ProvisionerApp(controller, port=args.port, baud=args.baud, io_thread=io)
        try:
            app.run()
        finally:
            io.stop()
        return

    asyncio.run(_run_cli(args))


async def _serve_web(port: int):
    import uvicorn
    from mesh_provisioner import web_server

    config = uvicorn.Config(web_server.app, host="0.0.0.0", port=port, log_level="info")
    await uvicorn.Server(config).serve()


async def _run_cli(args):
    """Run one-shot commands or the plain interactive prompt."""
    controller = build_controller(args)

    print("\n" + "=" * 50)
    print("  Mesh Shell Provisioner")
    print("=" * 50)

    if not await controller.connect(args.port, args.baud):
        return

    try:
        if args.init:
            await controller.initialize()
        if args.discover:
            await controller.discover()
        if not (args.init or args.discover):
            await interactive_mode(controller)
    finally:
        await controller.disconnect()


async def interactive_mode(controller: MeshProvisioner):
    """Plain CLI prompt (--no-tui)."""
    print()
    print("Commands:")
    print("  discover / d       Listen for one beacon and commission it")
    print("  init               Initialize gateway as provisioner")
    print("  leds on|off        Local LED")
    print("  all on|off         LED on every registered node")
    print("  sendto <addr> <m>  Vendor message to a unicast address")
    print("  node <addr>        Node detail")
    print("  nodes              List registered nodes")
    print("  raw <cmd>          Send raw shell command")
    print("  q/quit             Exit")
    print("=" * 50)
    print()

    loop = asyncio.get_running_loop()
    while controller.running:
        try:
            line = await loop.run_in_executor(None, lambda: input("mesh> ").strip())
            if not line:
                continue
            parts = line.split()
            verb = parts[0].lower()
            if verb in ['q', 'quit', 'exit']:
                break
            elif verb in ['d', 'discover', 'refresh']:
                await controller.discover()
            elif verb == 'init':
                await controller.initialize()
            elif verb == 'leds':
                await controller.set_local_output(parts[1].lower() in ('on', '1'))
            elif verb == 'all':
                await controller.broadcast_output(parts[1].lower() == 'on')
            elif verb == 'sendto':
                await controller.send_to(int(parts[1], 16), line.split(None, 2)[2])
            elif verb == 'node':
                print(controller.node_detail(int(parts[1], 16)))
            elif verb == 'nodes':
                for node in controller.registry:
                    print(f"  {node.address_text}  {node.identifier}")
            elif verb == 'raw':
                await controller.send_raw(line.split(None, 1)[1])
            else:
                print("  Unknown command. Type 'q' to quit.")
        except (KeyboardInterrupt, EOFError):
            print("\nExiting...")
            break
        except (ValueError, IndexError):
            print("  Invalid value or missing argument")


def _run_web_only(args):
    """Run the controller with the web dashboard only (no TUI)."""
    from mesh_provisioner import web_server
    from mesh_provisioner.io_thread import IoThread

    controller = build_controller(args)
    controller._web_enabled = True
    io = IoThread()
    io.start()
    controller.io_thread = io
    web_server.set_controller(controller)

    async def startup_and_serve():
        if not await controller.connect(args.port, args.baud):
            print("  Gateway not connected. Web server starting anyway...")
        await _serve_web(args.web_port)

    print("\n" + "=" * 50)
    print("  Mesh Shell Provisioner - Web Only Mode")
    print("=" * 50)
    print(f"  API:       http://0.0.0.0:{args.web_port}/api/state")
    print(f"  WebSocket: ws://0.0.0.0:{args.web_port}/ws")
    print()

    future = io.submit(startup_and_serve())
    try:
        future.result()
    except KeyboardInterrupt:
        print("\nShutting down...")
    finally:
        controller.running = False
        io.stop()


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        print("\nGoodbye!")
