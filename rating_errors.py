class RatingError(ValueError):
    """Base class for every failure raised by the rating engine."""


class EmptyInputError(RatingError):
    pass


class InvalidColumnError(RatingError):
    pass


class InvalidNoteTimeError(RatingError):
    pass


class DegenerateInputError(RatingError):
    """The notes do not span enough distinct times to define any gap, or the
    arithmetic produced a non-finite value."""


class UnsupportedKeyCountError(RatingError):
    pass


class InvalidOverallDifficultyError(RatingError):
    pass


class UnsupportedModError(RatingError):
    pass
