"""Server request handler.

Composes the cipher, rate limiter, hot cache and durable store behind the
``{mobile, action, dataType, data}`` request contract.
"""
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from budgetsync.core.cipher import PayloadCipher
from budgetsync.core.rate_limiter import RateLimiter
from budgetsync.core.ttl_cache import MISSING, TtlCache
from budgetsync.domain.interfaces import RecordStore, StorageKey
from budgetsync.domain.models import ACTION_GET, ACTION_SAVE, SaveAck, SaveDetails, SyncRequest
from budgetsync.errors import (
    DecryptionError,
    EncryptionError,
    InvalidRequestError,
    KeyLengthError,
    StoreError,
    error_body,
)

logger = logging.getLogger(__name__)

CACHE_HEADER = "X-Cache"

HotCacheKey = Tuple[StorageKey, str]


@dataclass
class HandlerResponse:
    status_code: int
    body: Any
    headers: Dict[str, str] = field(default_factory=dict)


class RequestHandler:
    def __init__(
        self,
        store: RecordStore,
        rate_limiter: RateLimiter,
        cipher: PayloadCipher,
        hot_cache: Optional[TtlCache] = None,
        hot_cache_ttl: float = 600,
    ):
        self.store = store
        self.rate_limiter = rate_limiter
        self.cipher = cipher
        self.hot_cache: TtlCache[HotCacheKey] = hot_cache if hot_cache is not None else TtlCache(hot_cache_ttl)

    async def handle(self, body: Any, client_id: str) -> HandlerResponse:
        """Run one request through validation, rate limiting and the action branch.

        Never raises; every failure becomes a response with a safe body.
        """
        action = None
        try:
            if not isinstance(body, dict):
                return HandlerResponse(400, error_body("Invalid request body"))
            try:
                request = SyncRequest.model_validate(body)
            except ValidationError:
                return HandlerResponse(400, error_body("Invalid request body"))
            action = request.action

            try:
                key = StorageKey.build(request.mobile, request.dataType)
            except InvalidRequestError as e:
                return HandlerResponse(400, error_body(e.message))

            limit = await self.rate_limiter.check(client_id)
            if not limit.allowed:
                return HandlerResponse(429, error_body("Too many requests"), limit.headers())

            if action == ACTION_SAVE:
                response = await self._save(key, request)
            elif action == ACTION_GET:
                response = await self._get(key)
            else:
                response = HandlerResponse(400, error_body("Invalid action"))

            response.headers.update(limit.headers())
            return response

        except KeyLengthError:
            logger.exception(f"Derived key has the wrong size (action={action})")
            return HandlerResponse(500, error_body("Encryption key unavailable", KeyLengthError.code))
        except EncryptionError:
            logger.exception(f"Encryption failed (action={action})")
            return HandlerResponse(500, error_body("Failed to encrypt data", EncryptionError.code))
        except StoreError:
            logger.exception(f"Durable store failure (action={action})")
            return HandlerResponse(500, error_body("Storage unavailable", StoreError.code))
        except Exception:
            logger.exception(f"Unhandled error (action={action})")
            return HandlerResponse(500, error_body("Internal server error", "INTERNAL_ERROR"))

    async def _save(self, key: StorageKey, request: SyncRequest) -> HandlerResponse:
        if request.data is None:
            return HandlerResponse(400, error_body("No data provided for saving"))

        record = self.cipher.encrypt_for(key.identity, request.data)
        await self.store.put(key, record)

        # Drop every cached action for the key, then write the new value through
        self.hot_cache.invalidate(lambda k: k[0] == key)
        self.hot_cache.set((key, ACTION_GET), copy.deepcopy(request.data))

        logger.info(f"Data saved for {key.identity}, type: {key.data_type}")
        ack = SaveAck(details=SaveDetails(user=request.mobile or key.identity, dataType=key.data_type))
        return HandlerResponse(200, ack.model_dump())

    async def _get(self, key: StorageKey) -> HandlerResponse:
        cached = self.hot_cache.get((key, ACTION_GET))
        if cached is not MISSING:
            return HandlerResponse(200, copy.deepcopy(cached), {CACHE_HEADER: "HIT"})

        record = await self.store.get(key)
        if record is None:
            logger.info(f"No record for {key.identity}, type: {key.data_type}")
            return HandlerResponse(404, error_body("No data found for this user"))

        payload = self.cipher.decrypt_for(key.identity, record)
        if payload is None:
            logger.error(f"Stored record for {key.identity}, type: {key.data_type} could not be decrypted")
            return HandlerResponse(500, error_body("Failed to decrypt data", DecryptionError.code))

        self.hot_cache.set((key, ACTION_GET), payload)
        return HandlerResponse(200, copy.deepcopy(payload), {CACHE_HEADER: "MISS"})
