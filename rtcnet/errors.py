"""Exceptions raised by the virtual network."""


class VNetError(Exception):
    """Base class for every error reported by the virtual network."""


class AddressInUseError(VNetError):
    """The requested transport address is already bound."""


class BindError(VNetError):
    """A local address could not be bound or assigned."""


class NoRouterLinkedError(VNetError):
    """The operation needs a router, but none is attached."""


class NotFoundError(VNetError):
    """A named interface, host or connection does not exist."""


class NatError(VNetError):
    """A NAT could not be configured or refused to translate a chunk."""


class RouterStateError(VNetError):
    """A router was started or stopped in the wrong state."""


class AddressSpaceExhaustedError(VNetError):
    """No more addresses or ports are left to hand out."""