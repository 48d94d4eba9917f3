"""Exceptions raised by the city controller."""


class CityError(Exception):
    """Base exception for all controller errors"""

    pass


class ConfigError(CityError):
    """Raised when city.yaml is missing or malformed"""

    pass


class ScaleCheckError(CityError):
    """Raised when a pool's scale check cannot produce a count"""

    def __init__(self, message: str, agent: str = "", output: str = ""):
        super().__init__(message)
        self.agent = agent
        self.output = output


class WorktreeError(CityError):
    """Raised when a git worktree cannot be created"""

    pass


class SessionError(CityError):
    """Raised when the session provider fails to start or stop a session"""

    def __init__(self, message: str, session: str = ""):
        super().__init__(message)
        self.session = session


class BeadNotFound(CityError):
    """Raised when a bead ID does not exist in the store"""

    def __init__(self, bead_id: str):
        super().__init__(f"bead not found: {bead_id}")
        self.bead_id = bead_id


class AutomationError(CityError):
    """Raised when an automation definition is invalid or its action fails"""

    pass


class AutomationTimeout(AutomationError):
    """Raised when an automation action exceeds its timeout"""

    def __init__(self, message: str, timeout: float):
        super().__init__(message)
        self.timeout = timeout
