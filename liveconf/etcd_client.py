"""
etcd v3 KV 클라이언트 (JSON 게이트웨이 기반)

httpx.AsyncClient로 etcd의 gRPC 게이트웨이(/v3/*)를 호출합니다.
- 포인트 조회/저장 (/v3/kv/range, /v3/kv/put)
- 장기 watch 스트림 (/v3/watch, 줄 단위 JSON)
- 사용자/비밀번호 인증 (/v3/auth/authenticate → Authorization 토큰)
- TLS (CA, 클라이언트 인증서)
- 엔드포인트 연결 실패 시 다음 엔드포인트로 전환 (watch 포함)
- 마지막으로 본 revision 이후부터 watch 재개

키와 값은 게이트웨이 규약에 따라 base64로 인코딩됩니다.
"""

import base64
import json
import logging
import ssl
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from .errors import SourceIOError
from .types import EtcdLocation, TLSConfig

logger = logging.getLogger(__name__)


class KVStore(Protocol):
    """엔진이 사용하는 KV 스토어 인터페이스"""
    async def get(self, key: str) -> tuple[bytes | None, bool]:
        """(값, 존재 여부)"""
        ...

    async def put(self, key: str, value: bytes) -> None: ...

    def watch(self, key: str) -> AsyncIterator[bytes]:
        """키에 PUT 될 때마다 새 값을 내보내는 스트림"""
        ...

    async def close(self) -> None: ...


def _b64(value: bytes | str) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return base64.b64encode(value).decode("ascii")


def build_ssl_context(tls: TLSConfig) -> ssl.SSLContext:
    """TLS 설정으로 SSLContext 생성 (TLS 1.2 이상)"""
    context = ssl.create_default_context(cafile=tls.trusted_ca_file or None)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if tls.cert_file:
        try:
            context.load_cert_chain(tls.cert_file, tls.key_file or None)
        except (OSError, ssl.SSLError) as e:
            raise SourceIOError(f"인증서 로드 실패: {e}") from e
    return context


class EtcdClient:
    """비동기 etcd v3 클라이언트

    사용법:
        ```python
        client = EtcdClient(EtcdLocation(endpoints=("http://127.0.0.1:2379",)))
        value, exists = await client.get("/config/app")
        await client.put("/config/app", b'{"app": {"port": 8080}}')

        async for value in client.watch("/config/app"):
            ...

        await client.close()
        ```
    """

    def __init__(self, location: EtcdLocation, transport: httpx.AsyncBaseTransport | None = None):
        """
        Args:
            location: etcd 위치 (엔드포인트, 인증, TLS)
            transport: 테스트용 httpx 트랜스포트
        """
        if not location.endpoints:
            raise SourceIOError("etcd 엔드포인트가 지정되지 않았습니다")

        self.location = location
        scheme = "https" if location.tls else "http"
        self.endpoints = [
            ep if "://" in ep else f"{scheme}://{ep}" for ep in location.endpoints
        ]
        self._current = 0
        self._token: str | None = None
        self._revisions: dict[str, int] = {}
        self._closed = False

        verify: ssl.SSLContext | bool = True
        if location.tls:
            verify = build_ssl_context(location.tls)

        self._client = httpx.AsyncClient(
            timeout=location.timeout,
            verify=verify,
            transport=transport,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def _url(self, index: int, path: str) -> str:
        return f"{self.endpoints[index].rstrip('/')}{path}"

    def _headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": self._token}
        return {}

    async def _authenticate(self) -> None:
        """사용자/비밀번호로 토큰 발급"""
        if not self.location.username:
            return
        self._token = None
        data = await self._post(
            "/v3/auth/authenticate",
            {"name": self.location.username, "password": self.location.password},
            authenticate=False,
        )
        self._token = data.get("token")
        logger.debug(f"[EtcdClient] 인증 완료: user={self.location.username}")

    async def _post(
        self, path: str, payload: dict[str, Any], authenticate: bool = True
    ) -> dict[str, Any]:
        """엔드포인트를 순회하며 POST 요청

        Raises:
            SourceIOError: 모든 엔드포인트 연결 실패 또는 오류 응답
        """
        if self._closed:
            raise SourceIOError("etcd 클라이언트가 이미 종료되었습니다")

        if authenticate and self.location.username and not self._token:
            await self._authenticate()

        last_error: Exception | None = None
        for offset in range(len(self.endpoints)):
            index = (self._current + offset) % len(self.endpoints)
            try:
                response = await self._client.post(
                    self._url(index, path), json=payload, headers=self._headers()
                )
                if response.status_code == 401 and authenticate and self.location.username:
                    # 토큰 만료 → 재인증 후 1회 재시도
                    await self._authenticate()
                    response = await self._client.post(
                        self._url(index, path), json=payload, headers=self._headers()
                    )
                response.raise_for_status()
                self._current = index
                return response.json()
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                logger.warning(f"[EtcdClient] 엔드포인트 연결 실패: {self.endpoints[index]} - {e}")
                last_error = e
            except httpx.HTTPStatusError as e:
                logger.error(f"[EtcdClient] 요청 실패: {path} - {e.response.text}")
                raise SourceIOError(f"etcd 요청 실패: {e.response.status_code}") from e
            except httpx.HTTPError as e:
                logger.error(f"[EtcdClient] 요청 에러: {path} - {e}")
                raise SourceIOError(f"etcd 서버 연결 실패: {e}") from e

        raise SourceIOError(f"모든 etcd 엔드포인트 연결 실패: {last_error}") from last_error


    def revision(self, key: str) -> int | None:
        """키에 대해 마지막으로 확인한 store revision (없으면 None)"""
        return self._revisions.get(key)

    def _remember_revision(self, key: str, data: dict[str, Any]) -> None:
        revision = (data.get("header") or {}).get("revision")
        if revision is not None:
            self._revisions[key] = int(revision)

    async def get(self, key: str) -> tuple[bytes | None, bool]:
        """키 조회

        Returns:
            (값, 존재 여부). 없으면 (None, False)
        """
        data = await self._post("/v3/kv/range", {"key": _b64(key)})
        self._remember_revision(key, data)
        kvs = data.get("kvs") or []
        if not kvs:
            return None, False
        return base64.b64decode(kvs[0].get("value", "")), True

    async def put(self, key: str, value: bytes) -> None:
        """키 저장"""
        data = await self._post("/v3/kv/put", {"key": _b64(key), "value": _b64(value)})
        self._remember_revision(key, data)

    async def watch(self, key: str) -> AsyncIterator[bytes]:
        """키 변경 스트림

        PUT 이벤트의 새 값만 내보내고 DELETE 이벤트는 무시합니다.
        마지막으로 본 revision이 있으면 그 다음 revision부터 구독하므로
        재연결 사이의 변경을 놓치지 않습니다.
        스트림이 끊기면 다음 엔드포인트로 전환한 뒤 SourceIOError를 발생시키며,
        재연결은 호출자 책임입니다.
        """
        if self.location.username and not self._token:
            await self._authenticate()

        index = self._current
        create_request: dict[str, Any] = {"key": _b64(key)}
        revision = self._revisions.get(key)
        if revision is not None:
            create_request["start_revision"] = str(revision + 1)
        timeout = httpx.Timeout(self.location.timeout, read=None)

        try:
            async with self._client.stream(
                "POST",
                self._url(index, "/v3/watch"),
                json={"create_request": create_request},
                headers=self._headers(),
                timeout=timeout,
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if self._closed:
                        return
                    if not line.strip():
                        continue
                    for value in self._parse_watch_message(key, line):
                        yield value
        except httpx.HTTPError as e:
            if self._closed:
                return
            self._rotate_endpoint(index)
            raise SourceIOError(f"etcd watch 스트림 실패: {e}") from e

        if not self._closed:
            raise SourceIOError("etcd watch 스트림이 종료되었습니다")

    def _rotate_endpoint(self, failed: int) -> None:
        if len(self.endpoints) < 2 or self._current != failed:
            return
        self._current = (failed + 1) % len(self.endpoints)
        logger.warning(
            f"[EtcdClient] watch 엔드포인트 전환: {self.endpoints[failed]} → "
            f"{self.endpoints[self._current]}"
        )

    def _parse_watch_message(self, key: str, line: str) -> list[bytes]:
        """watch 응답 한 줄에서 PUT 값 추출 (revision 갱신 포함)"""
        try:
            message = json.loads(line)
        except json.JSONDecodeError as e:
            raise SourceIOError(f"etcd watch 응답 파싱 실패: {e}") from e

        if "error" in message:
            raise SourceIOError(f"etcd watch 에러: {message['error']}")

        result = message.get("result") or {}
        compacted = int(result.get("compact_revision") or 0)
        if compacted:
            # 요청한 revision이 압축됨 → 다음 watch는 현재 시점부터
            self._revisions.pop(key, None)
            raise SourceIOError(f"etcd watch revision 압축됨: compact_revision={compacted}")

        values = []
        for event in result.get("events") or []:
            kv = event.get("kv") or {}
            if "mod_revision" in kv:
                self._revisions[key] = int(kv["mod_revision"])
            if event.get("type") == "DELETE":
                continue
            values.append(base64.b64decode(kv.get("value", "")))
        return values

    async def close(self) -> None:
        """클라이언트 종료"""
        if self._closed:
            return
        self._closed = True
        await self._client.aclose()
        logger.debug(f"[EtcdClient] 클라이언트 종료: {self.location.key}")
