import asyncio
import ipaddress
import os
import posixpath
import ssl
import sys
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

# Ensure repository root is on sys.path for imports when running tests here
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from ftp_access.client import Client


class FakeFTPServer:
    """
    Minimal in-process FTP server for tests.

    Files live in memory keyed by absolute path. Behaviour can be bent per
    test: `refuse` answers the given verbs with 502, `replies` overrides the
    reply lines of a verb, `silent` never answers a verb, `listings` replaces
    the listing body of a directory and `stalled` files fail with 451 after a
    few bytes while their data connection stays open. With `tls` the server
    speaks explicit FTPS (AUTH TLS, PROT P), or implicit FTPS when
    `implicit_tls` is set.
    """

    def __init__(self, files=None, dirs=None, *, user="tester", password="secret",
                 greeting=("220-Welcome to the fake FTP server", "220 Ready"),
                 refuse=(), replies=None, silent=(), listings=None, stalled=(),
                 tls=None, implicit_tls=False):
        self.files = dict(files or {})
        self.dirs = {"/"} | set(dirs or ())
        self.user = user
        self.password = password
        self.greeting = greeting
        self.refuse = {verb.upper() for verb in refuse}
        self.replies = {verb.upper(): lines for verb, lines in (replies or {}).items()}
        self.silent = {verb.upper() for verb in silent}
        self.listings = dict(listings or {})
        self.stalled = set(stalled)
        self.tls = tls
        self.implicit_tls = implicit_tls
        self.commands = []
        self.connections = 0
        self.data_connections = 0
        self.data_sessions_reused = []
        self.quits = 0
        self.port = None
        self._server = None
        self._writers = []
        self._data_servers = []

    async def start(self):
        self._server = await asyncio.start_server(
            self._handle, "127.0.0.1", 0, ssl=self.tls if self.implicit_tls else None
        )
        self.port = self._server.sockets[0].getsockname()[1]
        return self

    async def stop(self):
        self._server.close()
        for server in self._data_servers:
            server.close()
        for writer in self._writers:
            writer.close()
        try:
            await asyncio.wait_for(self._server.wait_closed(), 2)
        except asyncio.TimeoutError:
            pass

    async def _send(self, writer, *lines):
        writer.write(("\r\n".join(lines) + "\r\n").encode())
        await writer.drain()

    def _resolve(self, state, path):
        return posixpath.normpath(posixpath.join(state["cwd"], path or "."))

    async def _handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        state = {"cwd": "/", "user": None, "rest": 0, "data": None, "prot": False}
        try:
            await self._send(writer, *self.greeting)
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode().rstrip("\r\n")
                self.commands.append(text)
                verb, _, arg = text.partition(" ")
                verb = verb.upper()
                if verb in self.silent:
                    continue
                if verb in self.replies:
                    await self._send(writer, *self.replies[verb])
                    continue
                if verb in self.refuse:
                    await self._send(writer, f"502 {verb} not implemented")
                    continue
                handler = getattr(self, f"_cmd_{verb.lower()}", None)
                if handler is None:
                    await self._send(writer, f"502 {verb} not implemented")
                    continue
                if await handler(writer, state, arg) is False:
                    break
        except (ConnectionError, OSError):
            pass
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    # --- data connections -----------------------------------------------------

    async def _open_data(self, state):
        accepted = asyncio.get_running_loop().create_future()

        async def on_connect(data_reader, data_writer):
            self.data_connections += 1
            if accepted.done():
                data_writer.close()
                return
            if state["prot"]:
                # The client starts its handshake after the preliminary reply
                try:
                    await data_writer.start_tls(self.tls)
                except (ssl.SSLError, ConnectionError, OSError):
                    data_writer.close()
                    return
                tls = data_writer.get_extra_info("ssl_object")
                self.data_sessions_reused.append(tls.session_reused)
            if not accepted.done():
                accepted.set_result((data_reader, data_writer))

        server = await asyncio.start_server(on_connect, "127.0.0.1", 0)
        self._data_servers.append(server)
        state["data"] = (server, accepted)
        return server.sockets[0].getsockname()[1]

    async def _accept_data(self, state):
        server, accepted = state["data"]
        state["data"] = None
        try:
            return await asyncio.wait_for(accepted, 5)
        finally:
            server.close()

    def _discard_data(self, state):
        if state["data"] is not None:
            server, _ = state["data"]
            state["data"] = None
            server.close()

    async def _close_data(self, data_writer):
        data_writer.close()
        try:
            await data_writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def _listing_names(self, path):
        files = sorted(name for name in self.files if posixpath.dirname(name) == path)
        dirs = sorted(name for name in self.dirs if name != path and posixpath.dirname(name) == path)
        return files, dirs

    def _listing_path(self, state, arg):
        parts = [part for part in arg.split() if not part.startswith("-")]
        return self._resolve(state, parts[0] if parts else "")

    async def _send_listing(self, writer, state, path, body):
        if state["data"] is None:
            await self._send(writer, "425 Use PASV or EPSV first")
            return
        body = self.listings.get(path, body)
        await self._send(writer, "150 Here comes the directory listing")
        _, data_writer = await self._accept_data(state)
        data_writer.write(body.encode())
        await data_writer.drain()
        await self._close_data(data_writer)
        await self._send(writer, "226 Directory send OK")

    # --- commands -------------------------------------------------------------

    async def _cmd_auth(self, writer, state, arg):
        if self.tls is None or self.implicit_tls:
            await self._send(writer, "502 AUTH not implemented")
            return
        await self._send(writer, "234 Proceed with negotiation")
        await writer.start_tls(self.tls)

    async def _cmd_pbsz(self, writer, state, arg):
        await self._send(writer, "200 PBSZ=0")

    async def _cmd_prot(self, writer, state, arg):
        state["prot"] = self.tls is not None and arg.upper() == "P"
        await self._send(writer, f"200 PROT now {'Private' if state['prot'] else 'Clear'}")

    async def _cmd_user(self, writer, state, arg):
        state["user"] = arg
        await self._send(writer, "331 Please specify the password")

    async def _cmd_pass(self, writer, state, arg):
        if state["user"] == self.user and arg == self.password:
            await self._send(writer, "230 Login successful")
        else:
            await self._send(writer, "530 Login incorrect")

    async def _cmd_type(self, writer, state, arg):
        await self._send(writer, f"200 Switching to {arg} mode")

    async def _cmd_opts(self, writer, state, arg):
        await self._send(writer, "200 Always in UTF8 mode")

    async def _cmd_noop(self, writer, state, arg):
        await self._send(writer, "200 NOOP ok")

    async def _cmd_pwd(self, writer, state, arg):
        await self._send(writer, f'257 "{state["cwd"]}" is the current directory')

    async def _cmd_cwd(self, writer, state, arg):
        path = self._resolve(state, arg)
        if path not in self.dirs:
            await self._send(writer, "550 Failed to change directory")
            return
        state["cwd"] = path
        await self._send(writer, "250 Directory successfully changed")

    async def _cmd_epsv(self, writer, state, arg):
        port = await self._open_data(state)
        await self._send(writer, f"229 Entering Extended Passive Mode (|||{port}|)")

    async def _cmd_pasv(self, writer, state, arg):
        port = await self._open_data(state)
        await self._send(writer, f"227 Entering Passive Mode (127,0,0,1,{port >> 8},{port & 0xFF}).")

    async def _cmd_rest(self, writer, state, arg):
        state["rest"] = int(arg)
        await self._send(writer, f"350 Restart position accepted ({arg})")

    async def _cmd_size(self, writer, state, arg):
        path = self._resolve(state, arg)
        if path not in self.files:
            await self._send(writer, "550 Could not get file size")
            return
        await self._send(writer, f"213 {len(self.files[path])}")

    async def _cmd_dele(self, writer, state, arg):
        path = self._resolve(state, arg)
        if path not in self.files:
            await self._send(writer, "550 Delete operation failed")
            return
        del self.files[path]
        await self._send(writer, "250 Delete operation successful")

    async def _cmd_retr(self, writer, state, arg):
        path = self._resolve(state, arg)
        rest, state["rest"] = state["rest"], 0
        if path not in self.files:
            self._discard_data(state)
            await self._send(writer, "550 Failed to open file")
            return
        if state["data"] is None:
            await self._send(writer, "425 Use PASV or EPSV first")
            return
        if path in self.stalled:
            await self._send(writer, f"150 Opening BINARY mode data connection for {arg}")
            _, data_writer = await self._accept_data(state)
            self._writers.append(data_writer)
            data_writer.write(self.files[path][:4])
            await data_writer.drain()
            await self._send(writer, "451 Requested action aborted: local error in processing")
            return
        await self._send(writer, f"150 Opening BINARY mode data connection for {arg}")
        _, data_writer = await self._accept_data(state)
        data_writer.write(self.files[path][rest:])
        await data_writer.drain()
        await self._close_data(data_writer)
        await self._send(writer, "226 Transfer complete")

    async def _cmd_stor(self, writer, state, arg):
        path = self._resolve(state, arg)
        if state["data"] is None:
            await self._send(writer, "425 Use PASV or EPSV first")
            return
        await self._send(writer, "150 Ok to send data")
        data_reader, data_writer = await self._accept_data(state)
        self.files[path] = await data_reader.read()
        await self._close_data(data_writer)
        await self._send(writer, "226 Transfer complete")

    async def _cmd_list(self, writer, state, arg):
        path = self._listing_path(state, arg)
        files, dirs = self._listing_names(path)
        lines = [f"total {len(files) + len(dirs)}"] if files or dirs else []
        for name in dirs:
            lines.append(f"drwxr-xr-x    2 ftp      ftp          4096 Jan 15 10:30 {posixpath.basename(name)}")
        for name in files:
            size = len(self.files[name])
            lines.append(f"-rw-r--r--    1 ftp      ftp      {size:>8} Jan 15 10:30 {posixpath.basename(name)}")
        await self._send_listing(writer, state, path, "".join(line + "\r\n" for line in lines))

    async def _cmd_mlsd(self, writer, state, arg):
        path = self._listing_path(state, arg)
        files, dirs = self._listing_names(path)
        lines = ["type=cdir;modify=20240115103000; ."]
        for name in dirs:
            lines.append(f"type=dir;modify=20240115103000; {posixpath.basename(name)}")
        for name in files:
            size = len(self.files[name])
            lines.append(f"type=file;size={size};modify=20240115103000;UNIX.mode=0644; {posixpath.basename(name)}")
        await self._send_listing(writer, state, path, "".join(line + "\r\n" for line in lines))

    async def _cmd_quit(self, writer, state, arg):
        self.quits += 1
        await self._send(writer, "221 Goodbye")
        return False


@pytest_asyncio.fixture
async def ftp_server_factory():
    """Start fake FTP servers with per-test behaviour; all are stopped afterwards."""
    servers = []

    async def _start(**kwargs):
        server = await FakeFTPServer(**kwargs).start()
        servers.append(server)
        return server

    yield _start
    for server in servers:
        await server.stop()


@pytest_asyncio.fixture
async def ftp_server(ftp_server_factory):
    return await ftp_server_factory(
        files={
            "/hello.txt": b"Hello, FTP!",
            "/docs/a.txt": b"alpha",
            "/docs/b.bin": bytes(range(256)),
        },
        dirs={"/docs", "/docs/sub", "/empty"},
    )


@pytest.fixture(scope="session")
def tls_certificate(tmp_path_factory):
    """Self-signed certificate and key for 127.0.0.1, written as PEM files."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "127.0.0.1")])
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(timezone.utc) - timedelta(days=1))
        .not_valid_after(datetime.now(timezone.utc) + timedelta(days=7))
        .add_extension(
            x509.SubjectAlternativeName([x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )
    directory = tmp_path_factory.mktemp("tls")
    cert_file = directory / "server.pem"
    key_file = directory / "server.key"
    cert_file.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ))
    return cert_file, key_file


@pytest.fixture
def server_tls_context(tls_certificate):
    cert_file, key_file = tls_certificate
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(cert_file, key_file)
    return context


@pytest.fixture
def make_client():
    """Build a Client pointed at a fake server."""
    def _make(server, **overrides):
        values = {
            "host": "127.0.0.1",
            "port": server.port,
            "user": "tester",
            "password": "secret",
            "timeout": 5000,
        }
        values.update(overrides)
        return Client(**values)
    return _make
