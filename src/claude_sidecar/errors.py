"""
Error taxonomy for sidecar tasks.

Only the FatalTaskError subclasses propagate to callers. The rest are
raised and caught inside the orchestrator so a degraded task can still
complete.
"""


class SidecarError(Exception):
	"""Base exception for sidecar errors."""
	pass


class FatalTaskError(SidecarError):
	"""A failure that ends the task with status 'failed'."""

	@property
	def category(self) -> str:
		return type(self).__name__

	def describe(self) -> str:
		"""Category name plus underlying cause, for user-visible output."""
		return f"{self.category}: {self}"


class PortExhausted(FatalTaskError):
	"""Raised when no free control port could be found."""
	pass


class EngineUnreachable(FatalTaskError):
	"""Raised when the engine never answers its health endpoint."""
	pass


class EngineSessionCreateFailed(FatalTaskError):
	"""Raised when the engine does not return a usable session id."""
	pass


class InitialMessageFailed(FatalTaskError):
	"""Raised when the first prompt could not be delivered after retries."""
	pass


class EngineRequestError(SidecarError):
	"""Raised when a single engine HTTP request fails."""
	pass


class FoldExtractionFailed(SidecarError):
	"""Raised when the summary cannot be extracted from engine output."""
	pass


class ConflictDetectionFailed(SidecarError):
	"""Raised when file conflict detection fails."""
	pass


class DriftComputationFailed(SidecarError):
	"""Raised when context drift cannot be computed."""
	pass


class SessionNotFoundError(SidecarError):
	"""Raised when a session directory or metadata file does not exist."""
	pass


class SessionExistsError(SidecarError):
	"""Raised when creating a session whose id is already taken."""
	pass


class InvalidTransitionError(SidecarError):
	"""Raised when a session status change would not be monotonic."""
	pass
