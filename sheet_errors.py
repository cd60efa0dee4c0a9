from typing import Optional


class SpriteSheetError(Exception):
    pass


class FormatError(SpriteSheetError):
    def __init__(self, message: str, line_number: int, token: Optional[str] = None) -> None:
        super().__init__(message)
        self.line_number = line_number
        self.token = token


class MissingAttributeError(FormatError):
    pass


class DuplicateStateError(SpriteSheetError):
    pass


class MigrationError(SpriteSheetError):
    pass


class DependencyMissingError(MigrationError):
    def __init__(self, state: str, family: str) -> None:
        super().__init__(f"{state} needs a {family} animation, none found.")
        self.state = state
        self.family = family


class InconsistentFrameError(SpriteSheetError):
    pass


class PackingError(SpriteSheetError):
    pass


class ConfigError(SpriteSheetError):
    pass
