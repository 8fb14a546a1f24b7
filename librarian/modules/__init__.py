"""Protocol modules that plug into ChannelStream."""

from librarian.modules.base import Done, Emit, Failed, ProtocolModule, Step
from librarian.modules.passthrough import Passthrough, PassthroughState

__all__ = [
    "Done",
    "Emit",
    "Failed",
    "Passthrough",
    "PassthroughState",
    "ProtocolModule",
    "Step",
]
