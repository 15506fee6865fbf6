class NothingToDo(Exception):
    pass


class TunnelError(Exception):
    """
    Base class for failures that end a single tunnel.

    :param spec:
        The `.TunnelSpec` the failure belongs to, when known.
    """

    def __init__(self, message, spec=None):
        super().__init__(message)
        self.spec = spec

    def __str__(self):
        message = super().__str__()
        if self.spec is not None:
            return "{}: {}".format(self.spec.identifier, message)
        return message


class ConfigurationError(TunnelError):
    """
    Raised when a tunnel declaration or its environment is unusable.
    """


class NoAuthenticationMethods(ConfigurationError):
    """
    Raised when neither a private key nor an SSH agent is available.
    """


class CredentialError(TunnelError):
    """
    Raised when key material or an agent socket exists but can't be used.
    """


class TransportError(TunnelError):
    pass


class BindError(TransportError):
    """
    Raised when the local listener can't be set up.
    """


class DialError(TransportError):
    """
    Raised when the SSH connection or handshake with the server fails.
    """


class ChannelOpenError(TunnelError):
    """
    Raised when the server refuses or fails a single forwarded channel.

    Only ever affects the one connection being forwarded.
    """


class PlanError(Exception):
    """
    Raised when a plan/state document can't be read or understood.
    """


class GroupException(Exception):
    """
    Lightweight exception wrapper for `.GroupResult` when one contains errors.
    """

    def __init__(self, result):
        self.result = result

    def __str__(self):
        return "{} of {} tunnel(s) failed".format(
            len(self.result.failed), len(self.result)
        )
