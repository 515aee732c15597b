"""Bounded retries with exponential backoff."""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from recon.errors import Cancelled, TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class Backoff:
	"""Exponential backoff schedule: base * factor**n, capped at max_delay_s."""
	attempts: int = 3
	base_delay_s: float = 0.5
	max_delay_s: float = 10.0
	factor: float = 2.0
	jitter: float = 0.0  # fraction of the delay added at random

	def delay(self, retry_number: int) -> float:
		delay = min(self.max_delay_s, self.base_delay_s * (self.factor ** retry_number))
		if self.jitter > 0:
			delay += random.uniform(0.0, delay * self.jitter)
		return max(0.0, delay)


def sleep_or_cancel(seconds: float, cancel: Optional[threading.Event]) -> None:
	"""Sleep for `seconds`, raising Cancelled as soon as `cancel` is set."""
	if cancel is None:
		if seconds > 0:
			time.sleep(seconds)
		return
	if cancel.wait(seconds):
		raise Cancelled("operation cancelled")


def call_with_retry(
	fn: Callable[[], T],
	backoff: Backoff,
	retry_on: Tuple[Type[BaseException], ...] = (TransientInfraError,),
	cancel: Optional[threading.Event] = None,
	describe: str = "operation",
	on_attempt: Optional[Callable[[int], None]] = None,
) -> T:
	"""
	Call `fn` until it succeeds or the attempt budget runs out.

	Args:
		fn: Zero-argument callable
		backoff: Attempt budget and delay schedule
		retry_on: Exception types considered transient
		cancel: Optional cancellation signal checked before every attempt
		describe: Label used in log messages
		on_attempt: Called with the 1-based attempt number before each try

	Returns:
		Whatever `fn` returns

	Raises:
		Cancelled: If `cancel` is set before or between attempts
		The last transient exception once attempts are exhausted (its
		`attempts` attribute is set when it is a TransientInfraError);
		non-transient exceptions propagate immediately.
	"""
	attempts = max(1, backoff.attempts)
	for attempt in range(1, attempts + 1):
		if cancel is not None and cancel.is_set():
			raise Cancelled(f"{describe} cancelled before attempt {attempt}")
		if on_attempt is not None:
			on_attempt(attempt)
		try:
			return fn()
		except retry_on as e:
			if attempt >= attempts:
				if isinstance(e, TransientInfraError):
					e.attempts = attempt
				logger.warning(f"{describe} failed after {attempt} attempts: {e}")
				raise
			delay = backoff.delay(attempt - 1)
			logger.info(f"{describe} attempt {attempt}/{attempts} failed ({e}); retrying in {delay:.2f}s")
			sleep_or_cancel(delay, cancel)
	raise AssertionError("unreachable")
