#!/usr/bin/env python3
import os
import sys
import json
import logging
from collections import namedtuple
from dataclasses import dataclass, field
from enum import Enum
from itertools import islice
from typing import Optional

import requests
from bs4 import BeautifulSoup, Tag

try:
    import readline
except ImportError:  # pragma: no cover - platform dependent
    readline = None


# ========= BASIC CONFIG =========
PROMPT = ">> "
CONFIG_DIR = os.path.expanduser("~/.me")
CONFIG_FILE = os.path.join(CONFIG_DIR, "config.json")
HISTORY_FILE = os.path.join(CONFIG_DIR, "history")

log = logging.getLogger("markup_explorer")

DEFAULT_CONFIG = {
    "COLS": 80,
    "TIMEOUT": 15,
    "USER_AGENT": "Mozilla/5.0",
    "COLOR_THEME": "default",
    "HISTORY_LENGTH": 1000,
    "LOG_LEVEL": "WARNING",
}


def _is_number(value):
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def valid_setting(key, value):
    """Whether ``value`` can stand in for the default of ``key``."""
    if key == "COLS":
        return value is None or (isinstance(value, int)
                                 and not isinstance(value, bool) and value > 0)
    if key == "TIMEOUT":
        return _is_number(value) and value > 0
    if key == "HISTORY_LENGTH":
        return isinstance(value, int) and not isinstance(value, bool)
    return isinstance(value, type(DEFAULT_CONFIG[key]))


def load_config(path=CONFIG_FILE):
    if not os.path.exists(path):
        return DEFAULT_CONFIG.copy()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return DEFAULT_CONFIG.copy()

    cfg = DEFAULT_CONFIG.copy()
    if not isinstance(data, dict):
        return cfg
    for k in DEFAULT_CONFIG:
        if k not in data:
            continue
        if valid_setting(k, data[k]):
            cfg[k] = data[k]
        else:
            log.warning("ignoring %s=%r from %s, using %r",
                        k, data[k], path, DEFAULT_CONFIG[k])
    return cfg


CONFIG = load_config()


# ========= COLORS =========
def apply_color_theme(theme, enabled=True):
    global C_RESET, C_TITLE, C_CMD, C_ERR, C_DIM

    if not enabled:
        C_RESET = C_TITLE = C_CMD = C_ERR = C_DIM = ""
    elif theme == "night":
        C_RESET = "\033[0m"
        C_TITLE = "\033[38;5;250m"
        C_CMD   = "\033[38;5;65m"
        C_ERR   = "\033[38;5;131m"
        C_DIM   = "\033[38;5;240m"
    else:
        C_RESET = "\033[0m"
        C_TITLE = "\033[96m"
        C_CMD   = "\033[92m"
        C_ERR   = "\033[91m"
        C_DIM   = "\033[90m"


# plain output when piped
apply_color_theme(CONFIG["COLOR_THEME"], enabled=sys.stdout.isatty())


# ========= LOGGING =========
def configure_logging(level="WARNING"):
    """Send this module's log records to stderr at the given level."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    ))
    log.handlers = [handler]
    numeric = getattr(logging, str(level).upper(), None)
    log.setLevel(numeric if isinstance(numeric, int) else logging.WARNING)
    log.propagate = False

    logging.getLogger("urllib3").setLevel(logging.WARNING)
    log.debug("logging configured with level=%s", level)


# ========= ERRORS =========
class ExplorerError(Exception):
    """Base class for every failure a command can report."""


class ParseError(ExplorerError):
    pass


class NotFoundError(ExplorerError):
    pass


class UnrecognizedParameterError(ExplorerError):
    pass


class PreconditionError(ExplorerError):
    pass


class TransportError(ExplorerError):
    pass


class ServerError(ExplorerError):
    pass


# ========= HTTP SESSION =========
session = requests.Session()
session.headers.update({"User-Agent": CONFIG["USER_AGENT"]})

Page = namedtuple("Page", ["status", "reason", "text"])


def fetch(url, timeout=None):
    """GET ``url`` and return its status, reason and decoded body.

    Every status comes back as a ``Page``; deciding which ones are failures
    is left to the caller. Connection problems, bad URLs and timeouts are
    raised as ``TransportError``.
    """
    if timeout is None:
        timeout = CONFIG["TIMEOUT"]
    log.debug("fetching %s (timeout=%s)", url, timeout)
    try:
        r = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise TransportError(str(e)) from e
    log.info("%s -> %s %s", url, r.status_code, r.reason)
    return Page(r.status_code, r.reason, r.text)


# ========= TOKENIZER =========
PLAIN, QUOTED, PLAIN_ESCAPE, QUOTED_ESCAPE = range(4)

_ESCAPE_OF = {PLAIN: PLAIN_ESCAPE, QUOTED: QUOTED_ESCAPE}
_RESUME_OF = {PLAIN_ESCAPE: PLAIN, QUOTED_ESCAPE: QUOTED}


def tokenize(line):
    """Split one input line into shell-like tokens.

    A four state machine (quoted x escaped) read left to right:

        state           char     action          next state
        PLAIN           \\        drop            PLAIN_ESCAPE
        PLAIN           "        drop            QUOTED
        PLAIN           space    push token      PLAIN
        PLAIN           other    append          PLAIN
        QUOTED          \\        drop            QUOTED_ESCAPE
        QUOTED          "        push token      PLAIN
        QUOTED          other    append          QUOTED
        PLAIN_ESCAPE    any      append          PLAIN
        QUOTED_ESCAPE   any      append          QUOTED

    Pushing happens even for an empty token, so ``a  b`` gives
    ``["a", "", "b"]`` and ``"a" b`` gives ``["a", "", "b"]``. At end of
    line whatever is pending is pushed only if non-empty; an unterminated
    quote or a dangling backslash is not an error.
    """
    tokens = []
    current = []
    state = PLAIN

    for ch in line:
        if state in _RESUME_OF:
            current.append(ch)
            state = _RESUME_OF[state]
        elif ch == "\\":
            state = _ESCAPE_OF[state]
        elif ch == '"':
            if state == QUOTED:
                tokens.append("".join(current))
                current = []
                state = PLAIN
            else:
                state = QUOTED
        elif ch == " " and state == PLAIN:
            tokens.append("".join(current))
            current = []
        else:
            current.append(ch)

    if current:
        tokens.append("".join(current))
    return tokens


# ========= SESSION STATE =========
@dataclass
class SessionState:
    source_url: Optional[str] = None
    document_text: Optional[str] = None
    display_width: Optional[int] = 80
    cursor: Optional[Tag] = None
    # parsed tree owning every node ``cursor`` can point at
    document: Optional[BeautifulSoup] = field(default=None, repr=False)

    def replace_document(self, url, text):
        self.source_url = url
        self.document_text = text
        # nodes of the old tree must never leak into the new one
        self.document = None
        self.cursor = None
        log.debug("document replaced from %s (%d chars)", url, len(text))

    def parsed(self):
        if self.document_text is None:
            raise PreconditionError("no contents to parse")
        if self.document is None:
            self.document = BeautifulSoup(
                self.document_text, "html.parser", multi_valued_attributes=None
            )
        return self.document


# ========= TEXT HELPERS =========
def truncate(line, width):
    if width is None or len(line) <= width:
        return line
    return line[:max(width - 3, 0)] + "..."


def parse_count(value, what):
    # plain ASCII digits only: no sign, padding, underscores
    if not (value.isascii() and value.isdigit()):
        raise ParseError(f"invalid {what}: {value}")
    n = int(value)
    if n < 1:
        raise ParseError(f"invalid {what}: {value}")
    return n


# ========= INTERPRETER =========
class Command(Enum):
    COLS = "cols"
    URL = "url"
    HEAD = "head"
    FIND = "find"
    HELP = "help"


class FindOp(Enum):
    TAG = "tag"
    NAME = "name"
    ATTRS = "attrs"
    VALUES = "values"
    TREE = "tree"


HELP_TEXT = [
    ("cols <n|max>", "set display width (max = no truncation)"),
    ("url <url>", "fetch a document"),
    ("head <n>", "print the first n lines of the document"),
    ("find <ops...>", "walk the markup: tag <name|true>, name, attrs, values, tree"),
    ("help", "show this summary"),
]


class Interpreter:
    """Runs tokenized command lines against a ``SessionState``.

    The first token selects a ``Command``; the rest are consumed by that
    command's handler, each with its own little grammar. Handlers print as
    they go and raise an ``ExplorerError`` subclass on failure.
    """

    def __init__(self, state=None, fetcher=fetch, timeout=None):
        if state is None:
            state = SessionState(display_width=CONFIG["COLS"])
        self.state = state
        self.fetcher = fetcher
        self.timeout = timeout
        self._handlers = {
            Command.COLS: self.cols,
            Command.URL: self.url,
            Command.HEAD: self.head,
            Command.FIND: self.find,
            Command.HELP: self.help,
        }

    def execute(self, tokens):
        if not tokens:
            return
        try:
            command = Command(tokens[0])
        except ValueError:
            log.debug("ignoring unknown command %r", tokens[0])
            return
        self._handlers[command](iter(tokens[1:]))

    def cols(self, args):
        count = next(args, None)
        if count is None:
            raise ParseError("no column count specified")
        if count == "max":
            self.state.display_width = None
        else:
            self.state.display_width = parse_count(count, "column count")

    def url(self, args):
        url = next(args, None)
        if url is None:
            raise ParseError("no url specified")
        page = self.fetcher(url, self.timeout)
        if 500 <= page.status < 600:
            raise ServerError(f"server error: {page.status} {page.reason}".rstrip())
        self.state.replace_document(url, page.text)

    def head(self, args):
        count = next(args, None)
        if count is None:
            raise ParseError("no line count specified")
        limit = parse_count(count, "line count")

        text = self.state.document_text
        if text is None:
            raise PreconditionError("no contents available")
        for line in islice(text.split("\n"), limit):
            print(truncate(line, self.state.display_width))

    def find(self, args):
        soup = self.state.parsed()
        node = None

        for keyword in args:
            try:
                op = FindOp(keyword)
            except ValueError:
                raise UnrecognizedParameterError(
                    f"unrecognized parameter: {keyword}") from None

            if op is FindOp.TAG:
                name = next(args, None)
                if name is None:
                    raise ParseError("no tag specified")
                node = soup.find(True if name == "true" else name)
                if node is None:
                    raise NotFoundError(f"unable to find tag {name}")
                continue

            if op is FindOp.TREE:
                parent = soup if node is None else node
                for child in parent.children:
                    if isinstance(child, Tag):
                        print(child.name)
                continue

            if node is None:
                raise PreconditionError(f"no current node for '{keyword}'")
            if op is FindOp.NAME:
                print(node.name)
            elif op is FindOp.ATTRS:
                for name in node.attrs:
                    print(name)
            else:
                for name, value in node.attrs.items():
                    print(f"{name} = {value}")

        self.state.cursor = node

    def help(self, args):
        print(f"{C_TITLE}=== COMMANDS ==={C_RESET}")
        for usage, text in HELP_TEXT:
            print(f"{C_CMD}{usage:<16}{C_RESET}{text}")


def run_line(interpreter, line):
    """Execute one raw line, printing any error. Returns False on error."""
    try:
        interpreter.execute(tokenize(line))
    except ExplorerError as e:
        log.info("command failed: %s: %s", type(e).__name__, e)
        print(f"{C_ERR}Error: {e}{C_RESET}")
        return False
    return True


# ========= HISTORY =========
def ensure_config_dir(path):
    if os.path.isdir(path):
        return True
    try:
        os.mkdir(path)
    except OSError:
        print(f"{C_ERR}Unable to create {path}{C_RESET}")
        return False
    return True


def load_history(path):
    if readline is None:
        return False
    readline.set_history_length(CONFIG["HISTORY_LENGTH"])
    try:
        readline.read_history_file(path)
    except OSError:
        return False
    return True


def save_history(path):
    if readline is None:
        return True
    try:
        readline.write_history_file(path)
    except OSError as e:
        print(f"{C_ERR}Error: unable to save history: {e}{C_RESET}")
        return False
    return True


# ========= MAIN LOOP =========
def main():
    configure_logging(os.environ.get("ME_LOG_LEVEL", CONFIG["LOG_LEVEL"]))

    if not ensure_config_dir(CONFIG_DIR):
        return 1
    if not load_history(HISTORY_FILE):
        print(f"{C_DIM}No previous history.{C_RESET}")

    interpreter = Interpreter()
    while True:
        try:
            line = input(PROMPT)
            run_line(interpreter, line)
        except KeyboardInterrupt:
            print("CTRL-C")
            break
        except EOFError:
            print("CTRL-D")
            break
        except OSError as e:
            print(f"{C_ERR}Error: {e}{C_RESET}")
            return 1

    return 0 if save_history(HISTORY_FILE) else 1


if __name__ == "__main__":
    sys.exit(main())
