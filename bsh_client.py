"""
BeanShell remote client.

Sends a local script to a running BeanShell server and streams back whatever
the server prints while evaluating it.

    bsh-client host port scriptfile [arg1 arg2 ...]

The server's telnet-style session listens one port above its primary
service port, so ``port`` is the server's declared port and the connection
goes to ``port + 1``. Any arguments after the script file are handed to the
script as a pre-declared ``String [] args`` array.

PROTOCOL (one session per connection):

    bsh.prompt="";              <- silence the interactive prompt
    String [] args={
    "arg1",                     <- one line per extra argument
    };
    <raw script bytes>
    bsh.prompt="bsh % ";        <- restore the prompt for the next user
    <half-close write side>

The server's output is read on a separate thread from the moment the
connection opens until the server closes its side.
"""

import codecs
import os
import socket
import sys
import threading
import traceback

import yaml

# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_CONFIG = {
    "chunk_size": 8192,       # script file transfer chunk, bytes
    "read_size": 4096,        # max bytes taken from the socket per read
    "encoding": "utf-8",      # preamble / trailer lines
    "connect_timeout": None,  # seconds; None blocks until the OS gives up
}

CONFIG_ENV = "BSH_CLIENT_CONFIG"


def load_config(path=None):
    """Load configuration from a YAML file, falling back to the defaults.

    An explicit ``path`` (or ``$BSH_CLIENT_CONFIG``) must exist. Otherwise
    ``bsh_client.yaml`` in the working directory and
    ``~/.config/bsh_client/config.yaml`` are tried in that order, and the
    defaults are used when neither is there.
    """
    explicit = path or os.environ.get(CONFIG_ENV)
    if explicit:
        search_paths = [explicit]
    else:
        search_paths = [
            os.path.join(os.getcwd(), "bsh_client.yaml"),
            os.path.expanduser("~/.config/bsh_client/config.yaml"),
        ]

    for config_path in search_paths:
        if os.path.exists(config_path):
            print(f"Loading config from: {config_path}")
            with open(config_path, "r") as f:
                loaded = yaml.safe_load(f)
            return merge_config(loaded, config_path)

    if explicit:
        raise FileNotFoundError(
            f"config file not found. Searched:\n" +
            "\n".join(f"  - {p}" for p in search_paths)
        )
    return dict(DEFAULT_CONFIG)


def merge_config(loaded, source="<config>"):
    """Overlay a loaded YAML document on DEFAULT_CONFIG and validate it."""
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{source}: expected a mapping, got {type(loaded).__name__}")

    unknown = sorted(set(loaded) - set(DEFAULT_CONFIG))
    if unknown:
        raise ValueError(f"{source}: unknown config keys: {', '.join(unknown)}")

    cfg = dict(DEFAULT_CONFIG)
    cfg.update(loaded)

    for key in ("chunk_size", "read_size"):
        value = cfg[key]
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValueError(f"{source}: {key} must be a positive integer, got {value!r}")

    if not isinstance(cfg["encoding"], str) or not cfg["encoding"]:
        raise ValueError(f"{source}: encoding must be a non-empty string")
    try:
        codecs.lookup(cfg["encoding"])
    except LookupError:
        raise ValueError(f"{source}: unknown encoding: {cfg['encoding']!r}") from None

    timeout = cfg["connect_timeout"]
    if timeout is not None:
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ValueError(f"{source}: connect_timeout must be a positive number or null")

    return cfg


# ============================================================================
# ERRORS
# ============================================================================

class UsageError(Exception):
    """Bad command line; reported with the usage text, nothing is sent."""


class PeerConnectError(ConnectionError):
    """The server could not be reached or refused the connection."""

    def __init__(self, host, port):
        super().__init__(f"cannot connect to {host}:{port}")
        self.host = host
        self.port = port


class FileAccessError(OSError):
    """The script file is missing or unreadable."""


# ============================================================================
# PROTOCOL
# ============================================================================

MIN_ARGS = 3
PORT_OFFSET = 1  # telnet session port = server port + 1

PROMPT_OFF = 'bsh.prompt="";'
ARGS_OPEN = "String [] args={"
ARGS_CLOSE = "};"
PROMPT_RESET = 'bsh.prompt="bsh % ";'


def telnet_port(port):
    """Return the session port for the server's declared ``port``."""
    try:
        base = int(port)
    except (TypeError, ValueError):
        raise UsageError(f"port must be an integer, got {port!r}") from None
    target = base + PORT_OFFSET
    if target <= 0 or target > 65535:
        raise UsageError(f"port out of range: {base}")
    return target


def preamble_lines(extra_args):
    """Lines sent before the script body, newline-terminated, in wire order.

    Argument values are quoted verbatim; embedded quotes are not escaped.
    """
    lines = [PROMPT_OFF + "\n", ARGS_OPEN + "\n"]
    lines.extend(f'"{arg}",\n' for arg in extra_args)
    lines.append(ARGS_CLOSE + "\n")
    return lines


# ============================================================================
# READER
# ============================================================================

class ResponseReader(threading.Thread):
    """Drains the socket's read side and echoes it to ``out`` as it arrives.

    States: idle -> reading -> closed (peer EOF) | failed (any error).
    Errors stay on this thread; the writer only ever sees the join.
    """

    def __init__(self, sock, out=None, read_size=4096):
        super().__init__(name="bsh-reader")
        self.sock = sock
        self.out = out
        self.read_size = read_size
        self.state = "idle"

    def run(self):
        out = self.out if self.out is not None else sys.stdout.buffer
        print("Reading responses from server ...", flush=True)
        self.state = "reading"
        try:
            while True:
                data = self.sock.recv(self.read_size)
                if not data:
                    self.state = "closed"
                    break
                out.write(data)
                out.flush()
        except OSError as e:
            self.state = "failed"
            print(f"Error while reading server response: {e}", file=sys.stderr)
            traceback.print_exc()
        except Exception as e:
            self.state = "failed"
            print(f"Unexpected error in response reader: {e}", file=sys.stderr)
            traceback.print_exc()
        finally:
            print("... disconnected from server.", flush=True)


# ============================================================================
# SESSION
# ============================================================================

class Session:
    """One connection to the server.

    The calling thread owns the write side; the ResponseReader owns the read
    side. Use as a context manager so the socket is released on every path.
    """

    def __init__(self, sock, host, port, out=None, read_size=4096, encoding="utf-8"):
        self.sock = sock
        self.host = host
        self.port = port
        self.encoding = encoding
        self.reader = ResponseReader(sock, out=out, read_size=read_size)

    @classmethod
    def connect(cls, host, port, timeout=None, **kwargs):
        """Open the connection and start reading before anything is sent.

        ``port`` is the session port, i.e. already offset by PORT_OFFSET.
        """
        if not host:
            raise UsageError("host must not be empty")
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except OSError as exc:
            raise PeerConnectError(host, port) from exc
        # the timeout only guards connect; reads block until the peer is done
        sock.settimeout(None)

        session = cls(sock, host, port, **kwargs)
        session.reader.start()
        return session

    def send_line(self, line):
        # argv may carry undecodable bytes as surrogate escapes; send them back as-is
        self.sock.sendall(line.encode(self.encoding, "surrogateescape"))

    def send_preamble(self, extra_args):
        # one sendall per line: the peer reads line by line
        for line in preamble_lines(extra_args):
            self.send_line(line)

    def stream_file(self, path, chunk_size=8192):
        """Forward the file at ``path`` byte for byte, ``chunk_size`` at a time."""
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        try:
            f = open(path, "rb")
        except OSError as exc:
            raise FileAccessError(exc.errno, f"cannot read script file: {exc.strerror}", path) from exc

        with f:
            while True:
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                self.sock.sendall(chunk)

    def finish_and_wait(self):
        """Restore the prompt, half-close, and wait for the server to finish."""
        self.send_line(PROMPT_RESET + "\n")
        self.sock.shutdown(socket.SHUT_WR)
        self.reader.join()

    def close(self):
        if self.reader.is_alive():
            # bailing out early: wake the reader with EOF so the join returns
            try:
                self.sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # peer already gone
            self.reader.join()
        self.sock.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


# ============================================================================
# COMMAND LINE
# ============================================================================

def print_usage():
    print(f"Please provide {MIN_ARGS} or more arguments:")
    print("host port scriptfile [args...]")
    print("e.g.")
    print("localhost 9000 extras/remote.bsh apple blake 7")


def run(argv, config=None, out=None):
    """Run one client invocation. Every failure is reported, none escapes."""
    if len(argv) < MIN_ARGS:
        print_usage()
        return

    cfg = config if config is not None else dict(DEFAULT_CONFIG)
    host, port_string, path = argv[:MIN_ARGS]
    extra_args = argv[MIN_ARGS:]

    try:
        port = telnet_port(port_string)
    except UsageError as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        print_usage()
        return

    print(f"Connecting to BSH server on {host}:{port_string}", flush=True)

    try:
        with Session.connect(
            host,
            port,
            timeout=cfg["connect_timeout"],
            out=out,
            read_size=cfg["read_size"],
            encoding=cfg["encoding"],
        ) as session:
            session.send_preamble(extra_args)
            session.stream_file(path, chunk_size=cfg["chunk_size"])
            session.finish_and_wait()
    except UsageError as e:
        print(f"Invalid arguments: {e}", file=sys.stderr)
        print_usage()
    except PeerConnectError as e:
        print(f"Connection failed to {e.host}:{e.port}. Please check the server.", file=sys.stderr)
        traceback.print_exc()
    except OSError as e:
        print(f"I/O error occurred: {e}", file=sys.stderr)
        traceback.print_exc()
    except Exception as e:
        print(f"An unexpected error occurred: {e}", file=sys.stderr)
        traceback.print_exc()


def main():
    try:
        config = load_config()
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return
    run(sys.argv[1:], config)


if __name__ == "__main__":
    main()
