"""Commissioned mesh nodes and the registry that allocates their addresses."""

from dataclasses import dataclass
from typing import Iterable, Iterator, Optional

from mesh_provisioner.constants import FIRST_NODE_ADDRESS, MAX_UNICAST


@dataclass(frozen=True)
class Node:
    """One commissioned (or local) device on the mesh."""
    address: int           # 16-bit unicast, unique key
    identifier: str = ""   # Device UUID from the beacon (normalized)

    @property
    def address_text(self) -> str:
        return f"0x{self.address:04x}"


class NodeRegistry:
    """Known nodes, provisioned identifiers and the next free unicast address.

    Owned by a single controller and passed to whoever needs it; there is
    no process-wide instance. Addresses are never recycled: the counter
    only moves forward.
    """

    def __init__(self, next_address: int = FIRST_NODE_ADDRESS):
        self.nodes: dict[int, Node] = {}          # address -> Node, discovery order
        self.provisioned: set[str] = set()        # identifiers that finished provisioning
        self.next_address = next_address

    def allocate_address(self) -> int:
        """Return the next unicast address and advance the counter."""
        address = self.next_address
        # Deliberate: the unicast range ends at 0x7FFF, past it is group space
        if address > MAX_UNICAST:
            raise ValueError("unicast address space exhausted")
        self.next_address += 1
        return address

    def is_provisioned(self, identifier: str) -> bool:
        return identifier in self.provisioned

    def register(self, address: int, identifier: str) -> Node:
        """Insert a Node for ``address`` unless one exists; always mark ``identifier``.

        Idempotent on address: a second call with the same address keeps the
        first Node. The identifier is marked provisioned on both paths, so
        callers that must not provision twice check ``is_provisioned`` first.
        """
        node = self.nodes.get(address)
        if node is None:
            node = Node(address=address, identifier=identifier)
            # Node is built before it is published, readers never see half of it
            self.nodes[address] = node
        self.provisioned.add(identifier)
        return node

    def lookup(self, address: int) -> Optional[Node]:
        return self.nodes.get(address)

    def restore(self, nodes: Iterable[Node], provisioned: Iterable[str] = ()):
        """Reload persisted state; moves the counter past every known address."""
        for node in nodes:
            self.register(node.address, node.identifier)
        self.provisioned.update(provisioned)
        if self.nodes:
            self.next_address = max(self.next_address, max(self.nodes) + 1)

    def addresses(self, exclude: Iterable[int] = ()) -> list[int]:
        skip = set(exclude)
        return [a for a in self.nodes if a not in skip]

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(list(self.nodes.values()))

    def __contains__(self, address: int) -> bool:
        return address in self.nodes
