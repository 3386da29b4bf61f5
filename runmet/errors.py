"""Exception types raised by RunMet."""


class RunMetError(Exception):
    """Base class for all RunMet errors."""


class InvalidWindowError(RunMetError, ValueError):
    """A window spec could not be resolved: bad preset, missing session or malformed bounds."""


class PresetNotFoundError(RunMetError, LookupError):
    """No saved comparison preset exists with the requested id."""

    def __init__(self, preset_id: int):
        super().__init__(f"Comparison preset {preset_id} not found")
        self.preset_id = preset_id
