from __future__ import annotations


class NetmodError(Exception):
    pass


class ConfigurationError(NetmodError):
    """The committee handed to the voting engine is malformed."""


class InvalidStateError(NetmodError):
    pass


class EnumerationFailure(NetmodError):
    """Listing the network's groups failed; nothing has been queued."""


class RecordNotFoundError(NetmodError):
    pass


class VoteRejectedError(NetmodError):
    feedback = "❌ Vote rejected"


class UnauthorizedVoterError(VoteRejectedError):
    feedback = "❌ You cannot vote"


class DuplicateVoteError(VoteRejectedError):
    feedback = "⚠️ You cannot change your vote!"


class VotingClosedError(VoteRejectedError):
    feedback = "⌛ Voting is closed"

    def __init__(self, message: str, *, expired: bool = False) -> None:
        super().__init__(message)
        # set when this very vote found the record past its TTL and closed it
        self.expired = expired
