"""
Provisioner exceptions
"""


class ProvisionerError(Exception):
    """
    Base class of every error raised by the provisioning controller.
    """


class TransportUnavailable(ProvisionerError):
    """
    Raised when a command is written while no channel to the gateway is open.
    """

    def __init__(self, reason: str = "serial port not open"):
        super().__init__(reason)
        self.reason = reason


class TransactionInProgress(ProvisionerError):
    """
    Raised when a command is dispatched while another one still awaits its
    response. Not fatal: the caller has to wait for the open transaction.
    """

    def __init__(self, pending: str):
        super().__init__(f"transaction in progress: {pending!r}")
        self.pending = pending


class ResponseTimeout(ProvisionerError):
    """
    Raised when a transaction deadline elapses before any byte was received.

    The (empty) response is kept so callers that proceed anyway can still
    inspect it.
    """

    def __init__(self, command: str, response=None):
        super().__init__(f"no response to {command!r}")
        self.command = command
        self.response = response
