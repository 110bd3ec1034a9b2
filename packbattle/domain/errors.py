"""Errors raised by battle services.

``BattleError`` subclasses are precondition violations: they are raised before
any mutation and carry the HTTP status the routers answer with.
``SettlementError`` is an internal failure reported to callers as opaque.
"""


class BattleError(Exception):
    status_code = 400
    detail = "Invalid battle request"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.detail)
        self.detail = detail or self.detail


class BattleNotFoundError(BattleError):
    status_code = 404
    detail = "Battle not found"


class UserNotFoundError(BattleError):
    status_code = 404
    detail = "User not found"


class BoxNotFoundError(BattleError):
    status_code = 404
    detail = "Box not found"


class NotAuthorizedError(BattleError):
    status_code = 403
    detail = "Only the battle creator or an admin can start the battle"


class BattleNotWaitingError(BattleError):
    status_code = 409
    detail = "Battle has already started or finished"


class BattleNotFullError(BattleError):
    detail = "Battle is not full yet"


class ParticipantsNotReadyError(BattleError):
    detail = "Waiting for participants to be ready"


class BattleNotFinishedError(BattleError):
    detail = "Can only delete finished battles"


class EmptyCatalogError(BattleError):
    detail = "Box has no cards"


class BattleFullError(BattleError):
    detail = "This battle is full"


class AlreadyJoinedError(BattleError):
    detail = "You are already in this battle"


class NotParticipantError(BattleError):
    detail = "You are not in this battle"


class InsufficientCoinsError(BattleError):
    detail = "Not enough coins"


class NotEnoughBotsError(BattleError):
    detail = "Not enough bots available"


class SettlementError(Exception):
    """Settlement could not be completed; details are in the server log."""

    def __init__(self, battle_id, phase: str):
        super().__init__(f"Settlement of battle {battle_id} failed during {phase}")
        self.battle_id = battle_id
        self.phase = phase
