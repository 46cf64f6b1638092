"""Link manager."""

from quay.managers.link.link import LinkManager, LinkRemoval, LinkSpec, remove_link_rows

__all__ = ["LinkManager", "LinkRemoval", "LinkSpec", "remove_link_rows"]
