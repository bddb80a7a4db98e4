"""
Offset Negotiation

The responder owns the canonical copy of the file, so it decides the
resume point for both directions:

- upload:   the responder is the receiver. It already holds
            `local_size` bytes and the initiator declared the full size.
            offset = min(local_size, declared_size), size = declared_size
- download: the initiator is the receiver and reports how many bytes it
            holds. The responder knows the real size.
            offset = min(client_offset, local_size), size = local_size

In both cases the offset comes from bytes the receiving side already
has, and never exceeds the size.
"""

from .protocol import OffsetAgreement, TransferMode


def negotiate(mode: TransferMode, local_size: int, peer_value: int) -> OffsetAgreement:
    """
    Compute the agreed resume point on the responder side.

    Args:
        mode: Transfer direction from the initiator's point of view
        local_size: Size of the responder's copy (0 if it has none)
        peer_value: Declared size (upload) or client offset (download)

    Returns:
        OffsetAgreement with 0 <= offset <= size
    """
    if local_size < 0 or peer_value < 0:
        raise ValueError("sizes and offsets must be non-negative")

    if mode is TransferMode.UPLOAD:
        return OffsetAgreement(offset=min(local_size, peer_value), size=peer_value)

    return OffsetAgreement(offset=min(peer_value, local_size), size=local_size)
