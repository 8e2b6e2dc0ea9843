"""
Calls between the mount and the storage service, over ZeroMQ with MessagePack.

The mount makes one call per remote file operation, from many FUSE threads at once, and
every call already waits on the telemetry link. The call layer therefore stays thin:

* The server exposes the public methods of a service object and runs them on a pool of
  worker threads behind a ROUTER/DEALER proxy.
* The client keeps one REQ socket per calling thread. A call that times out discards its
  socket and fails with ETIMEDOUT.
* Dataclasses named in the service's type hints (file entries, sessions, chunks) are
  serialized automatically.
* Exceptions raised by the service are raised again on the client. Builtin exceptions
  and explicitly registered ones (like ProtocolError) keep their type and arguments, so
  errno codes from the storage reach the file system caller unchanged.
* An optional shared token guards the service.
"""

from abc import ABC
import builtins
from dataclasses import is_dataclass
from enum import auto, Enum
import errno
import logging
import threading
import time
import typing
from typing import Any, Callable, Dict, Iterable, List, NoReturn, Optional, Tuple

import msgpack
import zmq

from mavftpfs.logger import log, summarize


class Encoding:
    """MessagePack (de)serialization with support for dataclasses and exceptions."""

    def __init__(self, *dataclasses: type, exceptions: Iterable[type] = ()):
        """
        Create an encoding for the given dataclasses and exception types.

        Dataclasses referenced from the given ones are registered too. Exceptions that
        are neither builtin nor registered arrive as a plain Exception.
        """
        self._dataclasses: Dict[str, type] = {}
        self._exceptions: Dict[str, type] = {}

        for dataclass in dataclasses:
            self.register_dataclasses(dataclass)

        for exception in exceptions:
            self.register_exception(exception)

    def register_dataclasses(self, seed_type: type) -> None:
        """Register a type and every dataclass reachable from its type hints."""
        for dataclass in self._discover_dataclasses(seed_type):
            self._dataclasses[dataclass.__qualname__] = dataclass

    def register_exception(self, exception_type: type) -> None:
        """Register an exception type that can be rebuilt from its args."""
        self._exceptions[exception_type.__qualname__] = exception_type

    def pack(self, obj: Any) -> bytes:
        # File names from the device don't have to be valid UTF-8
        return msgpack.packb(
            obj, default=self.serialize_obj, unicode_errors="surrogateescape"
        )

    def unpack(self, data: bytes) -> Any:
        return msgpack.unpackb(
            data, object_hook=self.deserialize_obj, unicode_errors="surrogateescape"
        )

    def serialize_obj(self, obj: Any) -> Any:
        """Turn a registered dataclass or an exception into a plain dict."""
        if isinstance(obj, BaseException):
            return {
                "__exception__": {"name": type(obj).__qualname__, "args": obj.args}
            }
        elif type(obj).__qualname__ in self._dataclasses:
            return {"__data__": {"type": type(obj).__qualname__, "data": obj.__dict__}}
        else:
            raise ValueError(f"unserializable object {obj}")

    def deserialize_obj(self, obj: Any) -> Any:
        """Rebuild a dataclass or exception from the dict made by serialize_obj()."""
        if isinstance(obj, dict) and "__exception__" in obj:
            return self._deserialize_exception(**obj["__exception__"])
        elif isinstance(obj, dict) and "__data__" in obj:
            return self._deserialize_dataclass(
                obj["__data__"]["type"], obj["__data__"]["data"]
            )
        else:
            return obj

    def _deserialize_exception(self, name: str, args: List[Any]) -> BaseException:
        if name in self._exceptions:
            return self._exceptions[name](*args)

        builtin_exc = getattr(builtins, name, None)

        if isinstance(builtin_exc, type) and issubclass(builtin_exc, BaseException):
            return builtin_exc(*args)
        else:
            return Exception(*args)

    def _deserialize_dataclass(self, type_name: str, data: Dict[str, Any]) -> Any:
        if type_name not in self._dataclasses:
            raise TypeError(f"unknown dataclass '{type_name}'")

        try:
            return self._dataclasses[type_name](**data)
        except Exception as e:
            raise TypeError(f"failed to deserialize {type_name}: {e}")

    @staticmethod
    def _discover_dataclasses(*seed_types: type) -> List[type]:
        """Walk type hints, including List[T] and Optional[T], to find dataclasses."""
        pending = list(seed_types)
        seen = set()
        found = []

        while pending:
            candidate = pending.pop()

            if candidate in seen:
                continue

            seen.add(candidate)

            if is_dataclass(candidate):
                found.append(candidate)
                pending.extend(typing.get_type_hints(candidate).values())
            elif hasattr(candidate, "__origin__"):
                pending.extend(getattr(candidate, "__args__"))

        return found


class ReturnType(Enum):
    """Kind of reply sent back for a call."""

    NORMAL = auto()
    EXCEPTION = auto()
    TOKEN_ERROR = auto()


class InvalidTokenError(RuntimeError):
    """Raised on the client when the server rejected its token."""


class Base(ABC):
    """Encoding setup shared by client and server."""

    def __init__(self, service_type: type, exceptions: Iterable[type] = ()):
        """Prepare the encoding for the argument and return types of the service."""
        self._encoding = Encoding(
            *self._discover_function_types(service_type), exceptions=exceptions
        )

    @staticmethod
    def _discover_function_types(service_type: type) -> List[type]:
        function_types: List[type] = []

        for name in dir(service_type):
            member = getattr(service_type, name)

            if not name.startswith("__") and callable(member):
                function_types += typing.get_type_hints(member).values()

        return function_types


class Server(Base):
    """
    Serves the public methods of a service object.

    Example:
    ```
    server = rpc.Server(LocalStorageService("/srv/storage"), worker_count=4)
    server.serve("tcp://0.0.0.0:5761")
    ```
    """

    def __init__(
        self,
        service: Any,
        token: Optional[str] = None,
        worker_count: int = 1,
        exceptions: Iterable[type] = (),
    ):
        """
        Create a server for the service object.

        Calls that don't carry the given token are rejected. Exceptions of the given
        types are sent to the client with their type intact.
        """
        super().__init__(service.__class__, exceptions)

        self.context = zmq.Context()

        self.service = service
        self.token = token
        self.worker_count = worker_count

    def serve(self, endpoint: str) -> NoReturn:
        """Bind to an endpoint like tcp://0.0.0.0:5761 and handle calls forever."""
        frontend = self.context.socket(zmq.ROUTER)
        frontend.bind(endpoint)

        backend = self.context.socket(zmq.DEALER)
        backend.bind(f"inproc://{id(self)}")

        for _ in range(self.worker_count):
            threading.Thread(target=self._run_worker, daemon=True).start()

        zmq.proxy(frontend, backend)

        assert False, "unreachable"

    def _run_worker(self) -> NoReturn:
        socket = self.context.socket(zmq.REP)
        socket.connect(f"inproc://{id(self)}")

        while True:
            token, function, *args = self._encoding.unpack(socket.recv())
            socket.send(self._encoding.pack(self._dispatch(token, function, args)))

    def _dispatch(
        self, token: Optional[str], function: Optional[str], args: List[Any]
    ) -> Tuple[int, Any]:
        """Run a single call and return the reply to send."""
        if token != self.token:
            return ReturnType.TOKEN_ERROR.value, None

        try:
            # A call without a function name is a ping
            if function is None:
                return ReturnType.NORMAL.value, None
            elif function.startswith("_"):
                raise AttributeError(f"'{function}' is not exposed")

            return ReturnType.NORMAL.value, getattr(self.service, function)(*args)
        except Exception as e:
            return ReturnType.EXCEPTION.value, e


class Client(Base):
    """
    Makes calls on a service exposed by a Server.

    Safe to share between threads: every thread gets its own socket.

    Example:
    ```
    storage = rpc.Client(LocalStorageService, "tcp://localhost:5761", timeout_ms=30000)
    entries = storage.listdir("/fs/microsd")
    ```
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
        exceptions: Iterable[type] = (),
    ) -> None:
        """Create a client for a service of the given type at a ZeroMQ endpoint."""
        super().__init__(service_type, exceptions)

        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self.context = zmq.Context()

        self._socket_pool: Dict[threading.Thread, zmq.Socket] = {}
        self._socket_pool_lock = threading.Lock()

    def _socket(self, timeout_ms: Optional[int] = None) -> zmq.Socket:
        """
        Return the socket of the calling thread, connecting it if needed.

        A REQ socket must alternate between send and receive, so threads can't share
        one. A new socket starts with the given timeout, or the client's timeout.
        """
        t = threading.current_thread()

        with self._socket_pool_lock:
            if t not in self._socket_pool:
                sock = self.context.socket(zmq.REQ)
                self._set_timeout(sock, timeout_ms)
                sock.connect(self.endpoint)

                self._socket_pool[t] = sock

            return self._socket_pool[t]

    def _set_timeout(self, sock: zmq.Socket, timeout_ms: Optional[int]) -> None:
        if timeout_ms is None:
            timeout_ms = self.timeout_ms

        sock.setsockopt(zmq.RCVTIMEO, timeout_ms)
        sock.setsockopt(zmq.SNDTIMEO, timeout_ms)

    def _discard_socket(self) -> None:
        """
        Close the socket of the calling thread.

        A REQ socket that is still waiting for a reply can't send again, so the next
        call starts over with a fresh socket.
        """
        with self._socket_pool_lock:
            sock = self._socket_pool.pop(threading.current_thread(), None)

        if sock is not None:
            sock.close(linger=0)

    def ping(self, timeout_ms: Optional[int] = None) -> None:
        """Check that the server responds, optionally with a one-off timeout."""
        sock = self._socket(timeout_ms)

        if timeout_ms is not None:
            self._set_timeout(sock, timeout_ms)

        try:
            self._call(None, ())
        finally:
            if timeout_ms is not None and not sock.closed:
                self._set_timeout(sock, None)

    def __del__(self) -> None:
        with self._socket_pool_lock:
            for sock in self._socket_pool.values():
                sock.close(linger=0)

            self.context.destroy()

    @property
    def socket_count(self) -> int:
        """Return the number of threads with an open socket."""
        with self._socket_pool_lock:
            return len(self._socket_pool)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Return a function that calls the remote method with the given name."""

        def fn(*args: Any) -> Any:
            return self._call(name, args)

        return fn

    def _call(self, name: Optional[str], args: Tuple[Any, ...]) -> Any:
        """
        Send a call and wait for its reply.

        The token is sent along with every call. Exceptions raised by the service are
        raised here.
        """
        sock = self._socket()
        request = self._encoding.pack((self.token, name, *args))

        t_call = time.time()

        try:
            sock.send(request)
            typ, *ret = self._encoding.unpack(sock.recv())
        except zmq.ZMQError:
            self._discard_socket()
            raise TimeoutError(errno.ETIMEDOUT, "rpc call timed out")

        # Summarizing the arguments is slow, so only do it when it's logged
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((time.time() - t_call) * 1000)
            summary = tuple(summarize(arg) for arg in args)
            log.debug(f"rpc::{name}{summary} - {t_millis} ms")

        if typ == ReturnType.NORMAL.value:
            return ret[0] if len(ret) == 1 else ret
        elif typ == ReturnType.EXCEPTION.value:
            raise ret[0]
        elif typ == ReturnType.TOKEN_ERROR.value:
            raise InvalidTokenError("token mismatch between client and server")
        else:
            raise ValueError(f"unexpected return type {typ}")
