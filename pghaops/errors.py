class PreconditionError(Exception):
    """
    Raised when the host or environment is not fit for provisioning.
    Nothing has been changed when this is raised.

    Arguments:
        message: What is wrong.
        hint: How the operator can fix it, if we know.
    """

    def __init__(self, message: str, hint: str = None):
        super().__init__(message)
        self.message = message
        self.hint = hint


class NodeNotFoundError(PreconditionError):
    pass


class UnsupportedPlatformError(PreconditionError):
    pass
