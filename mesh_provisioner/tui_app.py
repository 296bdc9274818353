"""Textual TUI for the mesh shell provisioner."""

from textual import on, work
from textual.app import App, ComposeResult
from textual.containers import Horizontal
from textual.message import Message
from textual.widgets import DataTable, Footer, Header, Input, RichLog, Static

from mesh_provisioner.constants import GROUP_ADDRESS
from mesh_provisioner.controller import MeshProvisioner
from mesh_provisioner.io_thread import IoThread


def _parse_hex(text: str) -> int:
    return int(text, 16)


class ProvisionerApp(App):
    """Textual TUI for the mesh shell provisioner."""

    TITLE = "Mesh Shell Provisioner"

    CSS = """
    #sidebar {
        width: 30;
        dock: left;
        border-right: solid $accent;
        padding: 1;
        background: $surface;
    }
    #log {
        height: 1fr;
        border: solid $primary;
    }
    #nodes-table {
        height: auto;
        max-height: 12;
        border: solid $primary;
    }
    #cmd-input {
        dock: bottom;
    }
    """

    BINDINGS = [
        ("f2", "toggle_debug", "Debug"),
        ("f3", "clear_log", "Clear"),
        ("f5", "discover", "Discover"),
        ("escape", "focus_input", "Input"),
    ]

    # ---- Custom Messages ----

    class LogMsg(Message):
        """Generic log line for the RichLog panel."""
        def __init__(self, text: str, style: str = ""):
            super().__init__()
            self.text = text
            self.style = style

    class StatusMsg(Message):
        """Controller status changed."""
        def __init__(self, status: str):
            super().__init__()
            self.status = status

    class NodeAddedMsg(Message):
        """A node finished provisioning and binding."""
        def __init__(self, address: int, identifier: str):
            super().__init__()
            self.address = address
            self.identifier = identifier

    # ---- Init ----

    def __init__(self, controller: MeshProvisioner, port: str = None,
                 baud: int = 115200, io_thread: IoThread = None):
        super().__init__()
        self.controller = controller
        self.controller.app = self  # Back-reference for callbacks
        self.port = port
        self.baud = baud
        self.debug_mode = False
        self._io = io_thread or IoThread()
        self._owns_io = io_thread is None
        self.controller.io_thread = self._io

    # ---- Layout ----

    def compose(self) -> ComposeResult:
        yield Header()
        with Horizontal():
            yield Static("Connecting...", id="sidebar")
            yield RichLog(id="log", wrap=True, highlight=True, markup=True)
        yield DataTable(id="nodes-table")
        yield Input(placeholder="Enter command (type 'help' for list)", id="cmd-input")
        yield Footer()

    def on_mount(self) -> None:
        """Initialize table and open the gateway port."""
        table = self.query_one("#nodes-table", DataTable)
        table.add_columns("Address", "UUID")
        table.cursor_type = "row"
        for node in self.controller.registry:
            table.add_row(node.address_text, node.identifier, key=str(node.address))
        self.query_one("#cmd-input", Input).focus()
        if self._owns_io:
            self._io.start()
        self.update_status()
        self.connect_gateway()

    # ---- Connection Worker ----

    @work(exclusive=True, group="connect")
    async def connect_gateway(self) -> None:
        if not self.port:
            self.log_message("No serial port given. Use --port or --list-ports.",
                             style="bold red")
            return
        await self._io.submit_async(self.controller.connect(self.port, self.baud))
        self.update_status()

    # ---- Command Handling ----

    @on(Input.Submitted, "#cmd-input")
    def on_cmd_submitted(self, event: Input.Submitted) -> None:
        cmd = event.value.strip()
        event.input.value = ""
        if cmd:
            self.log_message(f"> {cmd}", style="bold cyan")
            self.dispatch_command(cmd)

    @work(group="cmd")
    async def dispatch_command(self, cmd: str) -> None:
        """Parse a user command and run the matching intent on the I/O loop."""
        ctl = self.controller
        io = self._io
        parts = cmd.split()
        verb = parts[0].lower()
        try:
            if verb in ['q', 'quit', 'exit']:
                await io.submit_async(ctl.disconnect())
                self.exit()

            elif verb in ['d', 'discover', 'refresh', 'scan']:
                await io.submit_async(ctl.discover())

            elif verb == 'init':
                await io.submit_async(ctl.initialize())

            elif verb == 'leds':
                if len(parts) < 2 or parts[1].lower() not in ('on', 'off', '1', '0'):
                    self.log_message("Usage: leds on|off")
                    return
                await io.submit_async(ctl.set_local_output(parts[1].lower() in ('on', '1')))

            elif verb == 'all':
                if len(parts) < 2 or parts[1].lower() not in ('on', 'off'):
                    self.log_message("Usage: all on|off")
                    return
                await io.submit_async(ctl.broadcast_output(parts[1].lower() == 'on'))

            elif verb == 'sendto':
                if len(parts) < 3:
                    self.log_message("Usage: sendto <addr(hex)> <message...>")
                    return
                text = cmd.split(None, 2)[2]
                await io.submit_async(ctl.send_to(_parse_hex(parts[1]), text))

            elif verb in ['sub', 'unsub']:
                if len(parts) < 2:
                    self.log_message(f"Usage: {verb} <addr(hex)> [group(hex)]")
                    return
                group = _parse_hex(parts[2]) if len(parts) > 2 else GROUP_ADDRESS
                await io.submit_async(
                    ctl.subscribe(_parse_hex(parts[1]), group, remove=verb == 'unsub'))

            elif verb == 'node':
                if len(parts) < 2:
                    self.log_message("Usage: node <addr(hex)>")
                    return
                self.log_message(ctl.node_detail(_parse_hex(parts[1])))

            elif verb == 'addresses':
                if ctl.reported_addresses:
                    self.log_message("Received addresses: " + ", ".join(ctl.reported_addresses))
                else:
                    self.log_message("No addresses received yet")

            elif verb == 'raw':
                if len(parts) < 2:
                    self.log_message("Usage: raw <command>")
                    return
                await io.submit_async(ctl.send_raw(cmd.split(None, 1)[1]))

            elif verb == 'debug':
                self.action_toggle_debug()

            elif verb in ['clear', 'cls']:
                self.action_clear_log()

            elif verb == 'help':
                self._show_help()

            else:
                self.log_message("Unknown command. Type 'help' for list.")

        except (ValueError, IndexError):
            self.log_message("Invalid value or missing argument")

        self.update_status()

    # ---- Message Handlers ----

    def on_provisioner_app_log_msg(self, msg: LogMsg) -> None:
        log = self.query_one("#log", RichLog)
        if msg.style:
            log.write(f"[{msg.style}]{msg.text}[/{msg.style}]")
        else:
            log.write(msg.text)

    def on_provisioner_app_status_msg(self, msg: StatusMsg) -> None:
        self.update_status()

    def on_provisioner_app_node_added_msg(self, msg: NodeAddedMsg) -> None:
        table = self.query_one("#nodes-table", DataTable)
        key = str(msg.address)
        if key not in table.rows:
            table.add_row(f"0x{msg.address:04x}", msg.identifier, key=key)
        self.update_status()

    @on(DataTable.RowSelected, "#nodes-table")
    def on_node_selected(self, event: DataTable.RowSelected) -> None:
        """Show node detail for the selected row (display only)."""
        address = int(event.row_key.value)
        self.log_message(self.controller.node_detail(address), style="bold")

    # ---- UI Updates ----

    def update_status(self) -> None:
        """Refresh the sidebar with current state."""
        ctl = self.controller
        lines = ["[bold]Status[/bold]", ""]

        if ctl.transport is not None and ctl.transport.is_open:
            lines.append("[green]Connected[/green]")
            lines.append(f"{ctl.port}")
        else:
            lines.append("[yellow]Not connected[/yellow]")

        lines.append(f"\nState: [bold]{ctl.sequencer.state.value}[/bold]")
        lines.append(f"Nodes: {len(ctl.registry)}")
        lines.append(f"Next:  0x{ctl.registry.next_address:04x}")
        lines.append(f"Addresses seen: {len(ctl.reported_addresses)}")
        lines.append(f"\n{ctl.status}")

        if self.debug_mode:
            lines.append("\n[yellow]DEBUG ON[/yellow]")

        try:
            self.query_one("#sidebar", Static).update("\n".join(lines))
        except Exception:
            pass

    def _show_help(self):
        help_text = (
            "[bold]--- Provisioning ---[/bold]\n"
            "  d / discover       Listen for one beacon, commission it (or F5)\n"
            "  init                Initialize the gateway as provisioner\n"
            "  node <addr>         Show node detail\n"
            "  addresses           List addresses seen in traffic\n"
            "\n"
            "[bold]--- Control ---[/bold]\n"
            "  leds on|off         Local LED on the gateway\n"
            "  all on|off          LED command to every registered node\n"
            "  sendto <addr> <msg> Vendor message to a unicast address\n"
            "  sub <addr> [group]  Subscribe node to group (default c000)\n"
            "  unsub <addr> [grp]  Remove group subscription\n"
            "  raw <cmd>           Send raw shell command\n"
            "\n"
            "[bold]--- Keys / Misc ---[/bold]\n"
            "  debug               Toggle raw traffic (or F2)\n"
            "  clear / cls         Clear log (or F3)\n"
            "  Esc                 Focus input\n"
            "  q / quit            Quit"
        )
        self.query_one("#log", RichLog).write(help_text)

    # ---- Actions ----

    def action_toggle_debug(self) -> None:
        self.debug_mode = not self.debug_mode
        self.notify(f"Debug: {'ON' if self.debug_mode else 'OFF'}")
        self.update_status()

    def action_clear_log(self) -> None:
        self.query_one("#log", RichLog).clear()

    def action_focus_input(self) -> None:
        self.query_one("#cmd-input", Input).focus()

    def action_discover(self) -> None:
        self.dispatch_command("discover")

    def log_message(self, text: str, style: str = ""):
        """Convenience: post a LogMsg."""
        self.post_message(self.LogMsg(text, style))

    def on_unmount(self) -> None:
        """Close the port and stop the I/O thread when the app exits."""
        self.controller.running = False
        if self._owns_io:
            try:
                if self.controller.transport is not None:
                    self._io.call(self.controller.disconnect(), timeout=3.0)
            except Exception:
                pass
            self._io.stop()
