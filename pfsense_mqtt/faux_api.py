import datetime, hashlib, logging, secrets
import httpx

log = logging.getLogger("FauxAPI")


class FauxApiError(Exception):
    """Raised when the pfSense FauxAPI rejects or fails a request."""


class FauxApiClient:
    """
    Minimal async client for the pfSense FauxAPI package.
    Only whole-configuration read and patch are needed by the bridge.
    """

    def __init__(self, host, apikey, apisecret, verify_tls=False, transport=None):
        self.host = host
        self.apikey = apikey or ""
        self.apisecret = apisecret or ""
        base = host if host.startswith(("http://", "https://")) else f"https://{host}"
        self.base_url = f"{base.rstrip('/')}/fauxapi/v1/"
        self.client = httpx.AsyncClient(verify=verify_tls, transport=transport)

    def _auth_header(self):
        timestamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y%m%dZ%H%M%S")
        nonce = secrets.token_hex(4)
        digest = hashlib.sha256(f"{self.apisecret}{timestamp}{nonce}".encode()).hexdigest()
        return {"fauxapi-auth": f"{self.apikey}:{timestamp}:{nonce}:{digest}"}

    async def _request(self, method, action, **kwargs):
        params = {"action": action, **kwargs.pop("params", {})}
        try:
            r = await self.client.request(method, self.base_url, params=params,
                                          headers=self._auth_header(), **kwargs)
        except httpx.HTTPError as e:
            raise FauxApiError(f"{action} request failed: {e}") from e
        if r.status_code != 200:
            raise FauxApiError(f"{action} returned HTTP {r.status_code}")
        try:
            body = r.json()
        except ValueError as e:
            raise FauxApiError(f"{action} returned invalid JSON") from e
        if body.get("message") != "ok":
            raise FauxApiError(f"{action} failed: {body.get('message')}")
        return body

    async def get_configuration(self) -> dict:
        """Return the full pfSense configuration object."""
        body = await self._request("GET", "config_get")
        log.debug(f"[FauxAPI] config_get ok (callid={body.get('callid')})")
        return body["data"]["config"]

    async def patch_configuration(self, patch: dict):
        """Merge a partial configuration into the running one and reload filters."""
        body = await self._request("POST", "config_patch", json=patch,
                                   params={"do_backup": "true", "do_reload": "true"})
        log.debug(f"[FauxAPI] config_patch ok (callid={body.get('callid')})")
        return body.get("data")

    async def close(self):
        await self.client.aclose()
