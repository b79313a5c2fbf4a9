import logging

from web3 import AsyncWeb3

from keeper_config import BASE_RPC_URL, FALLBACK_RPCS

logger = logging.getLogger("ZapKeeper")

RATE_LIMIT_MARKERS = ["429", "403", "rate", "forbidden", "quota", "too many requests", "-32005"]
MAX_STRIKES = 3


class AsyncRPCManager:
    """Holds the active AsyncWeb3 connection and fails over on 429/403 strikes."""

    def __init__(self, endpoints=None, request_timeout=60):
        if endpoints is None:
            endpoints = [url for url in [BASE_RPC_URL, *FALLBACK_RPCS] if url]
        self.endpoints = list(endpoints)
        self.request_timeout = request_timeout
        self.current_index = 0
        self.strike_count = 0
        self.w3 = None

    @property
    def current_url(self):
        return self.endpoints[self.current_index] if self.endpoints else None

    def _build(self, url):
        return AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(url, request_kwargs={"timeout": self.request_timeout}))

    async def connect(self):
        """
        Connects to the first reachable endpoint, starting at the current one.
        Returns False when none answers.
        """
        for _ in range(len(self.endpoints)):
            url = self.endpoints[self.current_index]
            logger.info(f"🔌 Connecting to RPC: {url[:40]}...")
            self.w3 = self._build(url)
            try:
                if await self.w3.is_connected():
                    logger.info(f"🟢 Connected to RPC [{self.current_index + 1}/{len(self.endpoints)}]")
                    return True
                logger.warning(f"⚠️ RPC {url[:40]} not reachable")
            except Exception as e:
                logger.warning(f"⚠️ Connection test failed for {url[:40]}: {e}")
            self.current_index = (self.current_index + 1) % len(self.endpoints)
        return False

    def is_rate_limit_error(self, error):
        err_str = str(error).lower()
        return any(k in err_str for k in RATE_LIMIT_MARKERS)

    async def handle_rate_limit(self):
        """
        Records a strike. On the third strike rotates to the next endpoint and
        returns True so callers can rebind contracts to the new connection.
        """
        self.strike_count += 1
        if self.strike_count < MAX_STRIKES or len(self.endpoints) < 2:
            logger.warning(f"⏳ Rate limited (Strike {min(self.strike_count, MAX_STRIKES)}/{MAX_STRIKES})")
            if self.strike_count >= MAX_STRIKES:
                self.strike_count = 0
            return False

        self.strike_count = 0
        self.current_index = (self.current_index + 1) % len(self.endpoints)
        logger.warning(f"🔄 {MAX_STRIKES} strikes! Switching to RPC [{self.current_index + 1}/{len(self.endpoints)}]")
        self.w3 = self._build(self.endpoints[self.current_index])
        return True
