class EnvoyError(Exception):
    """Base class for errors raised while talking to an Envoy gateway"""


class EnvoyConnectionError(EnvoyError):
    """Gateway could not be reached or did not answer in time"""


class EnvoyResponseError(EnvoyError):
    """Gateway answered with an error status or a body that could not be parsed"""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class UnauthorizedError(EnvoyResponseError):
    """Gateway rejected the session or token (HTTP 401)"""

    def __init__(self, message, status_code=401):
        super().__init__(message, status_code)


class LoginError(EnvoyError):
    """Enlighten login or token request failed"""


class DiscoveryError(EnvoyError):
    """No gateway could be found on the local network"""


class InvalidConfigurationParameter(ValueError):
    pass
