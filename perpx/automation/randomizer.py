"""
PerpX Fairness Randomizer

Verifiable-randomness consumer used to permute the liquidation sweep order
so no user is systematically checked first.

Flow:
  1. An allow-listed caller requests randomness; the request id is recorded
     as pending and forwarded to the randomness source.
  2. The coordinator fulfils the request later with a random word.
  3. ``shuffle`` derives a deterministic Fisher–Yates permutation from the
     current value.
"""

import time
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from ..constants import RANDOMNESS_REFRESH_INTERVAL
from ..crypto.hashing import abi_keccak256, abi_keccak256_int, normalize_address
from ..exceptions import AuthorizationError, UnknownRequestError
from ..logger import get_logger

logger = get_logger(__name__)

UINT256_MODULUS = 1 << 256


class RandomnessSource(Protocol):
    """External randomness provider. Fulfilment arrives asynchronously."""

    def request_random_words(self, request_id: int) -> None: ...


class QueuedRandomnessSource:
    """
    Records requests so a test or simulator can fulfil them later.

    Stands in for a VRF coordinator: ``fulfill_next`` calls back into the
    randomizer as the coordinator address.
    """

    def __init__(self, coordinator: str):
        self.coordinator = normalize_address(coordinator)
        self.requests: List[int] = []

    def request_random_words(self, request_id: int) -> None:
        self.requests.append(request_id)

    def fulfill_next(self, randomizer: "FairnessRandomizer", value: int) -> int:
        request_id = self.requests.pop(0)
        randomizer.fulfill_randomness(self.coordinator, request_id, value)
        return request_id


class FairnessRandomizer:
    def __init__(
        self,
        owner: str,
        coordinator: str,
        source: Optional[RandomnessSource] = None,
        refresh_interval: int = RANDOMNESS_REFRESH_INTERVAL,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.owner = normalize_address(owner)
        self.coordinator = normalize_address(coordinator)
        self.source = source
        self.refresh_interval = refresh_interval
        self._clock = clock or (lambda: int(time.time()))

        self._authorized = {self.owner}
        # request id -> (requester, requested at)
        self._pending: Dict[int, Tuple[str, int]] = {}
        self._request_count = 0
        self._value: Optional[int] = None
        self.last_updated = 0

    # -- Access control -----------------------------------------------------

    def authorize(self, address: str, sender: str) -> None:
        self._only_owner(sender)
        self._authorized.add(normalize_address(address))

    def revoke(self, address: str, sender: str) -> None:
        self._only_owner(sender)
        self._authorized.discard(normalize_address(address))

    def is_authorized(self, address: str) -> bool:
        return normalize_address(address) in self._authorized

    # -- Requests -----------------------------------------------------------

    def request_randomness(self, sender: str) -> int:
        """
        Request a new random word.

        Returns:
            The request id (keccak of counter, requester and time)

        Raises:
            AuthorizationError: caller is not allow-listed
        """
        requester = normalize_address(sender)
        if requester not in self._authorized:
            raise AuthorizationError("Not authorized to request randomness")

        self._request_count += 1
        request_id = int.from_bytes(
            abi_keccak256(
                ["uint256", "address", "uint256"],
                [self._request_count, requester, self._clock()],
            ),
            "big",
        )
        self._pending[request_id] = (requester, self._clock())
        logger.info("Randomness requested by %s (request %s)", requester, hex(request_id)[:18])

        if self.source is not None:
            self.source.request_random_words(request_id)
        return request_id

    def fulfill_randomness(self, sender: str, request_id: int, value: int) -> None:
        if normalize_address(sender) != self.coordinator:
            raise AuthorizationError("Only coordinator can fulfill")
        if request_id not in self._pending:
            raise UnknownRequestError(f"Unknown or fulfilled request: {request_id}")

        del self._pending[request_id]
        self._value = value % UINT256_MODULUS
        self.last_updated = self._clock()
        logger.info("Randomness fulfilled (request %s)", hex(request_id)[:18])

    def needs_refresh(self) -> bool:
        self.expire_stale_requests()
        if self._pending:
            return False
        return self._value is None or self._clock() - self.last_updated >= self.refresh_interval

    def expire_stale_requests(self) -> List[int]:
        """
        Drop requests left unfulfilled for a full refresh interval.

        A late fulfilment of a dropped id raises UnknownRequestError.

        Returns:
            The expired request ids
        """
        now = self._clock()
        expired = [
            request_id for request_id, (_, requested_at) in self._pending.items()
            if now - requested_at >= self.refresh_interval
        ]
        for request_id in expired:
            del self._pending[request_id]
            logger.warning("Randomness request %s expired unfulfilled", hex(request_id)[:18])
        return expired

    def refresh(self, sender: str) -> Optional[int]:
        """Periodic request; no-op while a live request is pending or the value is fresh."""
        if not self.needs_refresh():
            return None
        return self.request_randomness(sender)

    # -- Reads --------------------------------------------------------------

    @property
    def has_value(self) -> bool:
        return self._value is not None

    @property
    def current_value(self) -> Optional[int]:
        return self._value

    @property
    def pending_requests(self) -> List[int]:
        return list(self._pending)

    def shuffle(self, addresses: Sequence[str]) -> List[str]:
        """
        Fisher–Yates permutation seeded by the current random value.

        Walks from the last index down; each step re-derives the seed as
        keccak(abi.encode(seed, i)) and swaps i with seed mod (i + 1).
        Returns a new list; an unseeded randomizer keeps the input order.
        """
        result = list(addresses)
        if self._value is None or len(result) < 2:
            return result

        seed = self._value
        for i in range(len(result) - 1, 0, -1):
            seed = abi_keccak256_int(["uint256", "uint256"], [seed, i])
            j = seed % (i + 1)
            result[i], result[j] = result[j], result[i]
        return result

    def _only_owner(self, sender: str) -> None:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can manage requesters")
