"""Error taxonomy shared by the matchmaker, orchestrator and transports.

Every error is a local, recoverable condition reported back to the caller;
transports map ``code`` / ``status_code`` onto their own wire format.
"""


class BattleError(Exception):
    code = 'battle_error'
    status_code = 400

    def __init__(self, message=None, **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class NotFound(BattleError):
    code = 'not_found'
    status_code = 404


class InsufficientFunds(BattleError):
    code = 'insufficient_funds'
    status_code = 402


class AlreadyActive(BattleError):
    code = 'already_active'
    status_code = 409


class InvalidTransition(BattleError):
    code = 'invalid_transition'
    status_code = 409


class DuplicateAnswer(InvalidTransition):
    code = 'duplicate_answer'


class NotParticipant(BattleError):
    code = 'not_participant'
    status_code = 403


class ConcurrencyConflict(BattleError):
    code = 'concurrency_conflict'
    status_code = 503


class InvalidInput(BattleError):
    code = 'bad_request'
    status_code = 400
