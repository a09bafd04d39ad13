#!/usr/bin/env python3
"""
Repository Change Map - per-path change frequency for a remote repository

Speaks the smart HTTP transfer protocol to discover the default branch and
download the object graph (commits and trees only, no blob contents), walks
every commit reachable from HEAD, diffs each commit's tree against the trees
of its parents and produces a directory tree annotated with:

- numChanges: how many (commit, parent) edges modified the path
- numFiles: how many files the path contains (1 for a file)

A full local clone can be analyzed the same way, without any network access.

Version: 1.0.0
"""

import abc
import asyncio
import cProfile
import hashlib
import io
import json
import logging
import os
import pstats
import re
import stat
import sys
import time
import weakref
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import click
import httpx
import psutil
import yaml
from colorama import Fore, Style, init as colorama_init
from dulwich.errors import NotGitRepository
from dulwich.object_store import MemoryObjectStore
from dulwich.objects import S_ISGITLINK, Commit, Tree
from dulwich.repo import Repo
from tqdm import tqdm

logger = logging.getLogger(__name__)

# Version information
VERSION = "1.0.0"
SCHEMA_VERSION = "1.0.0"

DEFAULT_AGENT = f"changemap/{VERSION}"
DEFAULT_TIMEOUT = 30.0


# ============================================================================
# ERRORS
# ============================================================================


class AnalysisError(Exception):
    """Base class for every failure that aborts an analysis run."""


class ProtocolValidationError(AnalysisError):
    """The server response violated the smart protocol framing or contract."""


class EmptyRepositoryError(AnalysisError):
    """The repository advertises no commits."""


class UnsupportedObjectKindError(AnalysisError):
    """A tree entry is neither a blob nor a tree (e.g. a submodule)."""


class TransferNotFoundError(AnalysisError):
    """The negotiation response did not contain a pack."""


class MalformedObjectError(AnalysisError):
    """An object could not be decoded or has the wrong type."""


class MissingObjectError(MalformedObjectError):
    """An object identifier is not present in the object store."""


class NetworkError(AnalysisError):
    """Transport-level failure (connection, DNS, timeout)."""


# ============================================================================
# FRAME CODEC (pkt-line)
# ============================================================================

FRAME_FLUSH = "flush"
FRAME_DATA = "data"
FRAME_PACK = "pack"

LENGTH_SIZE = 4
FLUSH_PKT = b"0000"
PACK_TOKEN = b"PACK"
MAX_FRAME_LENGTH = 65520

_LENGTH_RE = re.compile(rb"[0-9a-fA-F]{4}")


@dataclass(frozen=True)
class Frame:
    """
    A single protocol record.

    ``length`` is the declared length including the 4-byte prefix and is only
    set for data frames. A pack frame carries the rest of the stream.
    """

    kind: str
    payload: bytes = b""
    length: Optional[int] = None

    @property
    def is_flush(self) -> bool:
        return self.kind == FRAME_FLUSH


def ascii_text(data: bytes, start: int = 0, length: Optional[int] = None) -> str:
    """Decode ``data[start:start+length]`` as ASCII, rejecting any byte above 127."""
    end = len(data) if length is None else start + length
    if end > len(data):
        raise ProtocolValidationError(
            f"Unexpected end of data: wanted {end - start} bytes at offset {start}"
        )
    chunk = bytes(data[start:end])
    for value in chunk:
        if value > 127:
            raise ProtocolValidationError("Invalid ASCII character.")
    return chunk.decode("ascii")


def iter_frames(data: bytes) -> Iterator[Frame]:
    """
    Lazily decode a buffer of length-prefixed frames.

    Stops at the end of the buffer or at the first pack marker, whose frame
    holds everything from the marker onward. Bytes after the marker are never
    frame-decoded.
    """
    if not isinstance(data, bytes):
        data = bytes(data)
    pos = 0
    total = len(data)

    while pos < total:
        if total - pos < LENGTH_SIZE:
            raise ProtocolValidationError(f"Truncated frame length at offset {pos}")

        token = data[pos : pos + LENGTH_SIZE]
        ascii_text(token)

        if token == FLUSH_PKT:
            # A flush-pkt is distinct from an empty data frame ("0004")
            yield Frame(FRAME_FLUSH)
            pos += LENGTH_SIZE
            continue

        if token == PACK_TOKEN:
            yield Frame(FRAME_PACK, bytes(data[pos:]))
            return

        if not _LENGTH_RE.fullmatch(token):
            raise ProtocolValidationError(
                f"Invalid frame length {token!r} at offset {pos}"
            )
        length = int(token, 16)
        if length < LENGTH_SIZE:
            raise ProtocolValidationError(
                f"Frame length {length} at offset {pos} is shorter than its prefix"
            )
        if pos + length > total:
            raise ProtocolValidationError(
                f"Frame at offset {pos} declares {length} bytes, only {total - pos} left"
            )

        yield Frame(FRAME_DATA, bytes(data[pos + LENGTH_SIZE : pos + length]), length)
        pos += length


def encode_frame(payload) -> bytes:
    """Encode one data frame; ``payload`` may be bytes or text."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    length = len(payload) + LENGTH_SIZE
    if length > MAX_FRAME_LENGTH:
        raise ValueError(f"Frame payload too large: {len(payload)} bytes")
    return b"%04x" % length + payload


def _next_data_frame(frames: Iterator[Frame]) -> Frame:
    for frame in frames:
        if frame.kind == FRAME_DATA:
            return frame
        if frame.kind == FRAME_PACK:
            raise ProtocolValidationError("Unexpected pack data in reference advertisement")
    raise ProtocolValidationError("Unexpected end.")


# ============================================================================
# REPOSITORY URLS
# ============================================================================

OBJECT_ID_RE = re.compile(r"^[0-9a-f]{40}$")
NULL_OBJECT_ID = "0" * 40


@dataclass(frozen=True)
class RepositoryReference:
    object_id: str
    name: str

    def __post_init__(self):
        if not OBJECT_ID_RE.match(self.object_id):
            raise ProtocolValidationError(f"Invalid object id: {self.object_id!r}")


def _strip_git_suffix(url: str) -> str:
    url = url.rstrip("/")
    if url.endswith(".git"):
        url = url[: -len(".git")]
    return url


def repository_base_url(repo_url: str, proxy: Optional[str] = None) -> str:
    """
    Transfer base URL for a repository, always ending in ``.git``.

    With a proxy prefix the host and path are appended to it, e.g.
    ``https://proxy.example/github.com/owner/repo.git``.
    """
    url = _strip_git_suffix(repo_url.strip())
    if proxy:
        parts = urlsplit(url)
        if not parts.netloc:
            raise ValueError(f"Not an absolute repository URL: {repo_url}")
        url = f"{proxy.rstrip('/')}/{parts.netloc}{parts.path}"
    return f"{url}.git"


def extract_repository_name(url: str) -> Optional[str]:
    """https://.../.../dotfiles.git -> dotfiles"""
    base_name = url.rstrip("/").split("/")[-1]
    if base_name.endswith(".git"):
        base_name = base_name[: -len(".git")]
    return base_name or None


def build_file_url(repo_url: str, file_path: str, commit: str = "master") -> str:
    # GitHub and GitLab layout; Bitbucket and Gitea use /src/ instead
    return f"{_strip_git_suffix(repo_url)}/blob/{commit}/{file_path.lstrip('/')}"


def is_remote_source(source: str) -> bool:
    return urlsplit(source).scheme in ("http", "https")


# ============================================================================
# SMART HTTP CLIENT
# ============================================================================

UPLOAD_PACK_SERVICE = "git-upload-pack"
ADVERTISEMENT_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-advertisement"
RESULT_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-result"
REQUEST_CONTENT_TYPE = f"application/x-{UPLOAD_PACK_SERVICE}-request"
SERVICE_LINE = f"# service={UPLOAD_PACK_SERVICE}\n"
DEFAULT_REF_NAME = "HEAD"

_ADVERTISEMENT_PREFIX_RE = re.compile(rb"[0-9a-f]{4}#")

# "<40 hex> HEAD\0capabilities..."
_REF_ID_END = 40
_REF_NAME_END = _REF_ID_END + 1 + len(DEFAULT_REF_NAME)


def parse_advertisement(body: bytes) -> RepositoryReference:
    """
    Validate a reference advertisement and return its HEAD reference.

    The first data frame must be the service line, the second the HEAD ref
    line. A null identifier means the repository has no commits.
    """
    if not _ADVERTISEMENT_PREFIX_RE.fullmatch(body[:5]):
        raise ProtocolValidationError("Invalid response.")

    frames = iter_frames(body)

    service_line = ascii_text(_next_data_frame(frames).payload)
    if service_line != SERVICE_LINE:
        raise ProtocolValidationError(f"Invalid first line: {service_line!r}")

    ref_line = _next_data_frame(frames).payload
    object_id = ascii_text(ref_line, 0, _REF_ID_END)
    if object_id == NULL_OBJECT_ID:
        raise EmptyRepositoryError("Ref list is empty.")

    if len(ref_line) <= _REF_NAME_END or ref_line[_REF_NAME_END] != 0:
        raise ProtocolValidationError("First ref not of the expected size.")

    ref_id, _, name = ascii_text(ref_line, 0, _REF_NAME_END).partition(" ")
    if name != DEFAULT_REF_NAME:
        raise ProtocolValidationError("First ref is unexpectedly not HEAD.")

    return RepositoryReference(ref_id, name)


def build_negotiation_request(object_id: str, agent: str = DEFAULT_AGENT) -> bytes:
    if not OBJECT_ID_RE.match(object_id):
        raise ProtocolValidationError(f"Invalid object id: {object_id!r}")
    return (
        encode_frame(f"want {object_id} filter=blob:none agent={agent}\n")
        + FLUSH_PKT
        + encode_frame("done\n")
    )


def extract_pack(body: bytes) -> bytes:
    """Return the pack payload of a negotiation response."""
    for frame in iter_frames(body):
        if frame.kind == FRAME_PACK:
            return frame.payload
        if frame.kind == FRAME_DATA and frame.payload.startswith(b"ERR "):
            message = frame.payload[4:].decode("utf-8", "replace").strip()
            raise ProtocolValidationError(f"Server error: {message}")
    raise TransferNotFoundError("Could not find pack.")


class SmartHttpClient:
    """
    Minimal smart-HTTP client: one discovery GET and one negotiation POST.

    No retries and no authentication; any failure is terminal for the run.
    """

    def __init__(
        self,
        repo_url: str,
        proxy: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        agent: str = DEFAULT_AGENT,
        session: Optional[httpx.AsyncClient] = None,
    ):
        self.repo_url = repo_url
        self.base_url = repository_base_url(repo_url, proxy)
        self.timeout = timeout
        self.agent = agent
        self._session = session
        self._owns_session = session is None

    @property
    def discovery_url(self) -> str:
        return f"{self.base_url}/info/refs?service={UPLOAD_PACK_SERVICE}"

    @property
    def negotiation_url(self) -> str:
        return f"{self.base_url}/{UPLOAD_PACK_SERVICE}"

    @property
    def session(self) -> httpx.AsyncClient:
        """Get or create the HTTP session."""
        if self._session is None or self._session.is_closed:
            self._session = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": self.agent},
                follow_redirects=True,
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.aclose()
            self._session = None

    async def __aenter__(self) -> "SmartHttpClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        logger.debug("%s %s", method, url)
        try:
            response = await self.session.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e
        logger.debug(
            "%s %s -> %s (%d bytes)",
            method,
            url,
            response.status_code,
            len(response.content),
        )
        return response

    async def discover_head(self) -> RepositoryReference:
        """Fetch the reference advertisement and return the HEAD reference."""
        response = await self._request("GET", self.discovery_url)

        if not response.is_success:
            raise ProtocolValidationError(
                f"Request failed with status {response.status_code}."
            )

        content_type = response.headers.get("content-type")
        if content_type != ADVERTISEMENT_CONTENT_TYPE:
            raise ProtocolValidationError(
                f"Server is not speaking smart protocol (Content-Type: {content_type})."
            )

        return parse_advertisement(response.content)

    async def fetch_pack(self, object_id: str) -> bytes:
        """Negotiate a blobless pack for ``object_id`` and return its bytes."""
        response = await self._request(
            "POST",
            self.negotiation_url,
            content=build_negotiation_request(object_id, self.agent),
            headers={
                "Accept": RESULT_CONTENT_TYPE,
                "Content-Type": REQUEST_CONTENT_TYPE,
            },
        )

        if not response.is_success:
            raise ProtocolValidationError(
                f"Request failed with status {response.status_code}."
            )

        content_type = response.headers.get("content-type")
        if content_type != RESULT_CONTENT_TYPE:
            raise ProtocolValidationError(
                f"Unexpected negotiation response type: {content_type}"
            )

        pack = extract_pack(response.content)
        logger.debug("Received pack of %d bytes", len(pack))
        return pack


# ============================================================================
# OBJECT GRAPH
# ============================================================================

BLOB = "blob"
TREE = "tree"


@dataclass(frozen=True)
class CommitNode:
    object_id: str
    parents: Tuple[str, ...]
    tree: str


@dataclass(frozen=True)
class TreeEntry:
    name: str
    kind: str
    object_id: str


class ObjectGraph(abc.ABC):
    """Resolves commits and trees by identifier."""

    @abc.abstractmethod
    async def resolve_commit(self, object_id: str) -> CommitNode:
        ...

    @abc.abstractmethod
    async def resolve_tree(self, object_id: str) -> List[TreeEntry]:
        ...


def entry_kind(mode: int, name: str) -> str:
    """Classify a tree entry mode; submodules and unknown modes are rejected."""
    if S_ISGITLINK(mode):
        raise UnsupportedObjectKindError(
            f"Unsupported entry kind 'commit' (submodule) for {name!r}"
        )
    if stat.S_ISDIR(mode):
        return TREE
    if stat.S_ISREG(mode) or stat.S_ISLNK(mode):
        return BLOB
    raise UnsupportedObjectKindError(
        f"Unsupported entry kind (mode {mode:o}) for {name!r}"
    )


class ObjectStoreGraph(ObjectGraph):
    """
    Object graph backed by a dulwich object store.

    Built either from a transfer payload (in-memory store) or from a full
    local clone on disk.
    """

    def __init__(self, object_store, repo: Optional[Repo] = None):
        self.object_store = object_store
        self.repo = repo
        self._trees: Dict[str, List[TreeEntry]] = {}

    @classmethod
    def from_pack(cls, payload: bytes) -> "ObjectStoreGraph":
        """Inflate a pack (deltas included) into an in-memory store."""
        store = MemoryObjectStore()
        f, commit, abort = store.add_pack()
        try:
            f.write(payload)
            commit()
        except Exception as e:
            abort()
            raise MalformedObjectError(f"Could not decode pack: {e}") from e
        return cls(store)

    @classmethod
    def from_repository(cls, path: str) -> "ObjectStoreGraph":
        try:
            repo = Repo(path)
        except NotGitRepository as e:
            raise AnalysisError(f"Not a git repository: {path}") from e
        return cls(repo.object_store, repo=repo)

    def head(self) -> str:
        """HEAD commit of the backing local repository."""
        if self.repo is None:
            raise AnalysisError("Object graph is not backed by a repository")
        try:
            return self.repo.head().decode("ascii")
        except KeyError as e:
            raise EmptyRepositoryError("Repository has no HEAD commit.") from e

    def close(self) -> None:
        if self.repo is not None:
            self.repo.close()

    def _lookup(self, object_id: str, expected):
        try:
            obj = self.object_store[object_id.encode("ascii")]
        except KeyError:
            raise MissingObjectError(f"Object {object_id} not found") from None
        if not isinstance(obj, expected):
            raise MalformedObjectError(
                f"Object {object_id} is a {obj.type_name.decode()}, "
                f"expected {expected.type_name.decode()}"
            )
        return obj

    async def resolve_commit(self, object_id: str) -> CommitNode:
        commit = self._lookup(object_id, Commit)
        return CommitNode(
            object_id=object_id,
            parents=tuple(parent.decode("ascii") for parent in commit.parents),
            tree=commit.tree.decode("ascii"),
        )

    async def resolve_tree(self, object_id: str) -> List[TreeEntry]:
        entries = self._trees.get(object_id)
        if entries is None:
            tree = self._lookup(object_id, Tree)
            entries = []
            for item in tree.iteritems():
                # Non-UTF-8 bytes become "\xNN" so names stay distinct and encodable
                name = item.path.decode("utf-8", "backslashreplace")
                entries.append(
                    TreeEntry(name, entry_kind(item.mode, name), item.sha.decode("ascii"))
                )
            self._trees[object_id] = entries
        return entries


# ============================================================================
# CHANGE COUNTING
# ============================================================================

ROOT_PATH = "/"


async def gather_or_cancel(*aws) -> List[Any]:
    """
    Run awaitables concurrently; if one fails, cancel and drain the rest
    before re-raising so nothing keeps writing to an abandoned walk.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class PathChangeMap:
    """Change counts keyed by absolute path; directories end with '/'."""

    def __init__(self):
        self._counts: Counter = Counter()

    def charge(self, prefixes: Tuple[str, ...], path: str) -> None:
        """Count one modification of ``path`` and of every enclosing directory."""
        for prefix in prefixes:
            self._counts[prefix] += 1
        self._counts[path] += 1

    def get(self, path: str) -> int:
        return self._counts.get(path, 0)

    def as_dict(self) -> Dict[str, int]:
        return dict(self._counts)

    def __len__(self) -> int:
        return len(self._counts)

    def __contains__(self, path: str) -> bool:
        return path in self._counts


class TreeDifferencer:
    """
    Asymmetric tree diff: only paths on the "after" side are charged.

    Creations and deletions are never counted; a blob counts when it exists
    under the same name in both trees with different content.
    """

    def __init__(self, graph: ObjectGraph, changes: PathChangeMap):
        self.graph = graph
        self.changes = changes
        self.diffs_run = 0

    async def diff(
        self, after: str, before: str, prefixes: Tuple[str, ...] = (ROOT_PATH,)
    ) -> None:
        if after == before:
            return
        self.diffs_run += 1

        after_entries, before_entries = await gather_or_cancel(
            self.graph.resolve_tree(after), self.graph.resolve_tree(before)
        )
        before_blobs = {e.name: e.object_id for e in before_entries if e.kind == BLOB}
        before_trees = {e.name: e.object_id for e in before_entries if e.kind == TREE}

        location = prefixes[-1]
        subtrees = []
        for entry in after_entries:
            if entry.kind == BLOB:
                previous = before_blobs.get(entry.name)
                if previous is not None and previous != entry.object_id:
                    self.changes.charge(prefixes, f"{location}{entry.name}")
            else:
                previous = before_trees.get(entry.name)
                if previous is not None and previous != entry.object_id:
                    subtrees.append(
                        self.diff(
                            entry.object_id,
                            previous,
                            prefixes + (f"{location}{entry.name}/",),
                        )
                    )

        if subtrees:
            await gather_or_cancel(*subtrees)


class CommitWalker:
    """
    Visits every commit reachable from a head exactly once.

    Each visit diffs the commit's tree against each parent's tree. Commits
    are processed generation by generation so deep histories do not recurse;
    ``on_generation(depth, width)`` fires before each generation starts.
    """

    def __init__(
        self,
        graph: ObjectGraph,
        differencer: TreeDifferencer,
        on_visit: Optional[Callable[[CommitNode], None]] = None,
        on_generation: Optional[Callable[[int, int], None]] = None,
    ):
        self.graph = graph
        self.differencer = differencer
        self.on_visit = on_visit
        self.on_generation = on_generation
        self.visited: Set[str] = set()
        self.depth = 0

    async def walk(self, head: str) -> int:
        frontier = [head]
        while frontier:
            self.depth += 1
            if self.on_generation:
                self.on_generation(self.depth, len(frontier))
            parent_lists = await gather_or_cancel(*(self._visit(c) for c in frontier))
            # dict keeps first-seen order while dropping shared parents
            frontier = list(
                dict.fromkeys(
                    parent
                    for parents in parent_lists
                    for parent in parents
                    if parent not in self.visited
                )
            )
        logger.debug("Walked %d commits in %d generations", len(self.visited), self.depth)
        return len(self.visited)

    async def _visit(self, commit_id: str) -> Tuple[str, ...]:
        # Check-and-set happens before the first await
        if commit_id in self.visited:
            return ()
        self.visited.add(commit_id)

        commit = await self.graph.resolve_commit(commit_id)
        parents = await gather_or_cancel(
            *(self.graph.resolve_commit(p) for p in commit.parents)
        )
        await gather_or_cancel(
            *(
                self.differencer.diff(commit.tree, parent.tree)
                for parent in parents
                if parent.tree != commit.tree
            )
        )

        if self.on_visit:
            self.on_visit(commit)
        return commit.parents


# ============================================================================
# TREE AGGREGATION
# ============================================================================

FILE = "file"
DIRECTORY = "directory"


@dataclass(eq=False)
class AnalysisNode:
    """
    One file or directory of the head tree.

    ``parent`` is a weak reference used to push file counts upward while the
    tree is built; it never owns anything.
    """

    name: str
    kind: str
    num_changes: int = 0
    num_files: int = 0
    children: List["AnalysisNode"] = field(default_factory=list)
    parent: Optional[weakref.ref] = field(default=None, repr=False)

    @property
    def is_directory(self) -> bool:
        return self.kind == DIRECTORY

    def child(self, name: str) -> Optional["AnalysisNode"]:
        for node in self.children:
            if node.name == name:
                return node
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.kind,
            "numChanges": self.num_changes,
            "numFiles": self.num_files,
            "children": [child.to_dict() for child in self.children],
        }


class TreeAggregator:
    """Builds the annotated head tree from a finished PathChangeMap."""

    def __init__(self, graph: ObjectGraph, changes: PathChangeMap):
        self.graph = graph
        self.changes = changes

    async def build(self, root_tree: str) -> AnalysisNode:
        root = AnalysisNode("", DIRECTORY, self.changes.get(ROOT_PATH))
        await self._fill(root, ROOT_PATH, root_tree)
        return root

    async def _fill(self, node: AnalysisNode, path: str, tree_id: str) -> None:
        subtrees = []
        for entry in await self.graph.resolve_tree(tree_id):
            if entry.kind == BLOB:
                leaf = AnalysisNode(
                    entry.name,
                    FILE,
                    self.changes.get(f"{path}{entry.name}"),
                    num_files=1,
                    parent=weakref.ref(node),
                )
                node.children.append(leaf)
                self._count_file(leaf)
            else:
                child_path = f"{path}{entry.name}/"
                child = AnalysisNode(
                    entry.name,
                    DIRECTORY,
                    self.changes.get(child_path),
                    parent=weakref.ref(node),
                )
                node.children.append(child)
                subtrees.append(self._fill(child, child_path, entry.object_id))

        if subtrees:
            await gather_or_cancel(*subtrees)

    @staticmethod
    def _count_file(leaf: AnalysisNode) -> None:
        ref = leaf.parent
        while ref is not None:
            ancestor = ref()
            if ancestor is None:
                break
            ancestor.num_files += 1
            ref = ancestor.parent


def follow_path(root: AnalysisNode, path: str) -> Optional[AnalysisNode]:
    """Node at a slash-delimited path ("" is the root), or None."""
    path = path.strip("/")
    if path == "":
        return root

    current = root
    for segment in path.split("/"):
        current = current.child(segment)
        if current is None:
            return None
    return current


def hotspots(root: AnalysisNode, limit: Optional[int] = None) -> List[Tuple[str, int]]:
    """(path, numChanges) for every file, most changed first."""
    files = []
    stack = [(root, "")]
    while stack:
        node, prefix = stack.pop()
        for child in node.children:
            child_path = f"{prefix}/{child.name}"
            if child.is_directory:
                stack.append((child, child_path))
            else:
                files.append((child_path, child.num_changes))
    files.sort(key=lambda item: (-item[1], item[0]))
    return files[:limit] if limit is not None else files


async def analyze_graph(
    graph: ObjectGraph,
    head_id: str,
    on_visit: Optional[Callable[[CommitNode], None]] = None,
    on_generation: Optional[Callable[[int, int], None]] = None,
) -> Tuple[AnalysisNode, int]:
    """Walk history from ``head_id`` and return (annotated tree, commits walked)."""
    changes = PathChangeMap()
    head = await graph.resolve_commit(head_id)

    walker = CommitWalker(
        graph,
        TreeDifferencer(graph, changes),
        on_visit=on_visit,
        on_generation=on_generation,
    )
    commits = await walker.walk(head_id)

    root = await TreeAggregator(graph, changes).build(head.tree)
    return root, commits


# ============================================================================
# PROGRESS REPORTING
# ============================================================================


class ProgressReporter:
    """
    Console output for one analysis run.

    Stage banners, status lines and the summary go to stdout and are silenced
    by ``quiet``. Errors always reach stderr.
    """

    RULE = "=" * 70

    def __init__(
        self, quiet: bool = False, verbose: bool = False, use_colors: bool = True
    ):
        self.quiet = quiet
        self.verbose = verbose
        self.use_colors = use_colors
        self.started = time.monotonic()
        self._stage_started: Dict[str, float] = {}

    def _paint(self, text: str, *styles: str) -> str:
        if not self.use_colors or not styles:
            return text
        return "".join(styles) + text + Style.RESET_ALL

    def _emit(self, text: str, *styles: str) -> None:
        if not self.quiet:
            print(self._paint(text, *styles))

    def _emit_stats(self, stats: Dict[str, Any]) -> None:
        for key, value in stats.items():
            self._emit(f"   {key}: {value}")

    def stage_start(self, stage_name: str, message: str = ""):
        self._stage_started[stage_name] = time.monotonic()
        if self.quiet:
            return
        print()
        self._emit(self.RULE, Fore.CYAN)
        self._emit(f"▶ {stage_name}", Fore.BLUE, Style.BRIGHT)
        if message:
            self._emit(f"   {message}")
        self._emit(self.RULE, Fore.CYAN)

    def stage_complete(self, stage_name: str, stats: Optional[Dict] = None):
        """Elapsed time for the stage; ``stats`` only in verbose mode."""
        started = self._stage_started.pop(stage_name, None)
        elapsed = time.monotonic() - started if started is not None else 0.0
        self._emit(f"✔ {stage_name} done in {elapsed:.2f}s", Fore.GREEN, Style.BRIGHT)
        if stats and self.verbose:
            self._emit_stats(stats)

    def create_progress_bar(self, desc: str = "Walking commits") -> Optional[tqdm]:
        """
        Open-ended commit counter, or None when quiet. The walk reports its
        generation depth and frontier width through ``set_postfix``.
        """
        if self.quiet:
            return None
        return tqdm(
            total=None,
            desc=self._paint(desc, Fore.CYAN),
            unit=" commits",
            dynamic_ncols=True,
        )

    def info(self, message: str):
        self._emit(f"  {message}")

    def warning(self, message: str):
        self._emit(f"! {message}", Fore.YELLOW, Style.BRIGHT)

    def error(self, message: str):
        print(self._paint(f"error: {message}", Fore.RED, Style.BRIGHT), file=sys.stderr)

    def success(self, message: str):
        self._emit(f"✔ {message}", Fore.GREEN, Style.BRIGHT)

    def summary(self, stats: Dict[str, Any]):
        if self.quiet:
            return
        print()
        self._emit(self.RULE, Fore.CYAN)
        self._emit("Change map summary", Fore.MAGENTA, Style.BRIGHT)
        self._emit(self.RULE, Fore.CYAN)
        self._emit_stats(stats)
        self._emit(f"   Elapsed: {time.monotonic() - self.started:.2f}s", Fore.YELLOW)
        self._emit(self.RULE, Fore.CYAN)


# ============================================================================
# RESOURCE GUARDS
# ============================================================================


class MemoryMonitor:
    """
    Resident memory checkpoints between stages. Records the peak and the
    stage it was seen after; raises MemoryError once ``limit_mb`` is passed.
    """

    def __init__(self, limit_mb: Optional[float] = None):
        self.limit_mb = limit_mb
        self.peak_mb = 0.0
        self.peak_stage: Optional[str] = None
        self._process = psutil.Process(os.getpid())

    def check_memory(self, stage: Optional[str] = None) -> float:
        rss_mb = self._process.memory_info().rss / (1024 * 1024)
        if rss_mb > self.peak_mb:
            self.peak_mb, self.peak_stage = rss_mb, stage

        if self.limit_mb and rss_mb > self.limit_mb:
            where = f" after {stage}" if stage else ""
            raise MemoryError(
                f"Memory limit exceeded{where}: {rss_mb:.1f}MB > {self.limit_mb}MB"
            )
        return rss_mb


class ProfilingContext:
    """cProfile around a block; dumps raw stats and prints the hottest calls."""

    def __init__(
        self,
        enabled: bool = False,
        output_path: Optional[str] = None,
        top: int = 20,
        sort_key: str = "cumulative",
    ):
        self.output_path = output_path
        self.top = top
        self.sort_key = sort_key
        self.profiler = cProfile.Profile() if enabled else None

    def __enter__(self):
        if self.profiler is not None:
            self.profiler.enable()
        return self

    def __exit__(self, *exc_info):
        if self.profiler is None:
            return
        self.profiler.disable()
        if self.output_path:
            self.profiler.dump_stats(self.output_path)
        click.echo(self.report())

    def report(self) -> str:
        buffer = io.StringIO()
        stats = pstats.Stats(self.profiler, stream=buffer)
        stats.strip_dirs().sort_stats(self.sort_key).print_stats(self.top)
        return f"Profile: top {self.top} calls by {self.sort_key} time\n{buffer.getvalue()}"


# ============================================================================
# ANALYSIS ORCHESTRATION
# ============================================================================


@dataclass
class AnalysisResult:
    success: bool
    head_reference: Optional[str] = None
    root: Optional[AnalysisNode] = None
    error_message: Optional[str] = None
    commits_walked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "errorMessage": self.error_message}
        return {
            "success": True,
            "headRef": self.head_reference,
            "root": self.root.to_dict(),
        }


class RepositoryAnalyzer:
    """
    Runs one analysis: remote URLs go through discovery and negotiation,
    local directories are read as full clones.

    ``run()`` never raises for analysis failures; they come back as a failed
    AnalysisResult carrying the error message.
    """

    def __init__(
        self,
        source: str,
        proxy: Optional[str] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        agent: str = DEFAULT_AGENT,
        reporter: Optional[ProgressReporter] = None,
        memory_limit_mb: Optional[float] = None,
        session: Optional[httpx.AsyncClient] = None,
    ):
        self.source = source
        self.proxy = proxy
        self.timeout = timeout
        self.agent = agent
        self.reporter = reporter or ProgressReporter(quiet=True)
        self.memory_monitor = MemoryMonitor(limit_mb=memory_limit_mb)
        self.session = session

    async def run(self) -> AnalysisResult:
        try:
            if is_remote_source(self.source):
                return await self._run_remote()
            return await self._run_local()
        except (AnalysisError, MemoryError) as e:
            logger.debug("Analysis of %s failed", self.source, exc_info=True)
            return AnalysisResult(success=False, error_message=str(e))

    async def _run_remote(self) -> AnalysisResult:
        client = SmartHttpClient(
            self.source,
            proxy=self.proxy,
            timeout=self.timeout,
            agent=self.agent,
            session=self.session,
        )
        async with client:
            self.reporter.stage_start("Reference Discovery", client.discovery_url)
            head = await client.discover_head()
            self.reporter.stage_complete("Reference Discovery", {"HEAD": head.object_id})

            self.reporter.stage_start("Pack Transfer", client.negotiation_url)
            pack = await client.fetch_pack(head.object_id)
            self.reporter.stage_complete("Pack Transfer", {"Pack size": f"{len(pack):,} bytes"})

        graph = ObjectStoreGraph.from_pack(pack)
        self.memory_monitor.check_memory("pack inflation")
        return await self._analyze(graph, head.object_id)

    async def _run_local(self) -> AnalysisResult:
        graph = ObjectStoreGraph.from_repository(self.source)
        try:
            return await self._analyze(graph, graph.head())
        finally:
            graph.close()

    async def _analyze(self, graph: ObjectGraph, head_id: str) -> AnalysisResult:
        self.reporter.stage_start("History Walk", f"Diffing ancestry of {head_id}")
        progress_bar = self.reporter.create_progress_bar()
        hooks = {}
        if progress_bar is not None:
            hooks = dict(
                on_visit=lambda _: progress_bar.update(1),
                on_generation=lambda depth, width: progress_bar.set_postfix(
                    generation=depth, frontier=width, refresh=False
                ),
            )
        try:
            root, commits = await analyze_graph(graph, head_id, **hooks)
        finally:
            if progress_bar is not None:
                progress_bar.close()
        self.memory_monitor.check_memory("history walk")
        self.reporter.stage_complete(
            "History Walk", {"Commits": f"{commits:,}", "Files": f"{root.num_files:,}"}
        )

        return AnalysisResult(
            success=True, head_reference=head_id, root=root, commits_walked=commits
        )


async def analyze_repository(repo_url: str, **options) -> AnalysisResult:
    """Analyze a remote repository; failures are returned, not raised."""
    return await RepositoryAnalyzer(repo_url, **options).run()


async def analyze_local(path: str, **options) -> AnalysisResult:
    """Analyze a local clone; failures are returned, not raised."""
    return await RepositoryAnalyzer(os.path.abspath(path), **options).run()


# ============================================================================
# EXPORT
# ============================================================================

ANALYSIS_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["schema_version", "generated_at", "repository", "headRef", "root"],
    "properties": {
        "schema_version": {"type": "string"},
        "generator_version": {"type": "string"},
        "generated_at": {"type": "string"},
        "repository": {"type": "string"},
        "headRef": {"type": "string", "pattern": "^[0-9a-f]{40}$"},
        "root": {"$ref": "#/definitions/node"},
    },
    "definitions": {
        "node": {
            "type": "object",
            "required": ["name", "type", "numChanges", "numFiles", "children"],
            "properties": {
                "name": {"type": "string"},
                "type": {"enum": [FILE, DIRECTORY]},
                "numChanges": {"type": "integer", "minimum": 0},
                "numFiles": {"type": "integer", "minimum": 0},
                "children": {"type": "array", "items": {"$ref": "#/definitions/node"}},
            },
        }
    },
}


def export_analysis(
    result: AnalysisResult, output_dir: str, repository: str
) -> Dict[str, Any]:
    """Write change_tree.json and manifest.json; returns the manifest."""
    if not result.success:
        raise ValueError("Cannot export a failed analysis")

    os.makedirs(output_dir, exist_ok=True)
    document = {
        "schema_version": SCHEMA_VERSION,
        "generator_version": VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": repository,
        "headRef": result.head_reference,
        "root": result.root.to_dict(),
    }
    write_json(os.path.join(output_dir, "change_tree.json"), document)

    return generate_manifest(output_dir, result, repository, {"change_tree": "change_tree.json"})


def write_json(path: str, document: Any) -> None:
    """Write via a sibling temp file so a failed dump never leaves a partial file."""
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def generate_manifest(
    output_dir: str, result: AnalysisResult, repository: str, datasets: Dict[str, str]
) -> Dict[str, Any]:
    """Generate manifest.json with dataset metadata"""
    manifest = {
        "generator_version": VERSION,
        "schema_version": SCHEMA_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "repository": repository,
        "head_ref": result.head_reference,
        "commits_walked": result.commits_walked,
        "datasets": {},
    }

    for dataset_name, file_path in datasets.items():
        full_path = os.path.join(output_dir, file_path)
        with open(full_path, "rb") as f:
            data = f.read()
        manifest["datasets"][dataset_name] = {
            "file": file_path,
            "schema_version": SCHEMA_VERSION,
            "file_size_bytes": len(data),
            "sha256": hashlib.sha256(data).hexdigest(),
        }

    write_json(os.path.join(output_dir, "manifest.json"), manifest)
    return manifest


# ============================================================================
# CONFIGURATION
# ============================================================================

CONFIG_FILE_NAMES = [".changemap.yaml", ".changemap.yml", ".changemap.json"]


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from a YAML or JSON file."""
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    file_ext = os.path.splitext(config_path)[1].lower()

    with open(config_path, "r", encoding="utf-8") as f:
        if file_ext in [".yaml", ".yml"]:
            return yaml.safe_load(f) or {}
        elif file_ext == ".json":
            return json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {file_ext}")


def find_config_file(search_dir: Optional[str] = None) -> Optional[str]:
    """
    Auto-discover a configuration file in ``search_dir`` or the current directory.
    Searches for: .changemap.yaml, .changemap.yml, .changemap.json
    """
    search_paths = [search_dir, os.getcwd()] if search_dir else [os.getcwd()]

    for directory in search_paths:
        for config_name in CONFIG_FILE_NAMES:
            config_path = os.path.join(directory, config_name)
            if os.path.exists(config_path):
                return config_path
    return None


class ConfigResolver:
    """Resolve configuration with precedence: CLI > Config File > Defaults"""

    def __init__(
        self,
        cli_args: Dict[str, Any],
        config_path: Optional[str] = None,
        search_dir: Optional[str] = None,
    ):
        self.cli = {k: v for k, v in cli_args.items() if v is not None}
        self.config = {}

        if config_path:
            self.config = load_config_file(config_path)
        else:
            auto_path = find_config_file(search_dir)
            if auto_path:
                try:
                    self.config = load_config_file(auto_path)
                    print(f"Auto-discovered configuration: {auto_path}")
                except (OSError, ValueError, yaml.YAMLError) as e:
                    print(
                        f"Warning: Found config file but failed to load: {e}",
                        file=sys.stderr,
                    )

        # kebab-case keys in files map onto snake_case option names
        self.config = {k.replace("-", "_"): v for k, v in self.config.items()}

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.cli:
            return self.cli[key]
        if key in self.config:
            return self.config[key]
        return default


# ============================================================================
# CLI INTERFACE
# ============================================================================


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.argument("repository", required=False)
@click.option(
    "-o",
    "--output",
    type=click.Path(file_okay=False),
    help="Output directory (default: changemap_REPO_TIMESTAMP)",
)
@click.option(
    "--config",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path (.yaml or .json)",
)
# Transfer
@click.option("--proxy", help="Route requests through a proxy prefix URL")
@click.option("--timeout", type=float, help="HTTP timeout in seconds")
@click.option("--agent", help="Client agent sent during negotiation")
# Output Control
@click.option("--top", type=int, help="List the N most changed files")
@click.option("--memory-limit", type=float, help="Memory limit in MB")
@click.option("--profile", is_flag=True, default=None, help="Enable performance profiling")
@click.option("--profile-output", help="Profile output file")
@click.option("-q", "--quiet", is_flag=True, default=None, help="Suppress progress output")
@click.option("-v", "--verbose", is_flag=True, default=None, help="Show debug details")
@click.option("--no-color", is_flag=True, default=None, help="Disable colored output")
@click.option("--dry-run", is_flag=True, help="Show what would be fetched and exit")
@click.version_option(version=VERSION)
def main(repository, output, config, **kwargs):
    """
    Count how often every file and directory of a repository changed.

    REPOSITORY is an http(s) URL served over the smart protocol, or the path
    of a local clone.
    """
    if not repository:
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(2)

    remote = is_remote_source(repository)
    if not remote and not os.path.isdir(repository):
        ProgressReporter().error(f"Not a URL or a local directory: {repository}")
        sys.exit(1)

    resolver = ConfigResolver(
        kwargs, config, search_dir=None if remote else repository
    )

    quiet = resolver.get("quiet", False)
    verbose = resolver.get("verbose", False)
    no_color = resolver.get("no_color", False)
    proxy = resolver.get("proxy")
    timeout = resolver.get("timeout", DEFAULT_TIMEOUT)
    agent = resolver.get("agent", DEFAULT_AGENT)
    top = resolver.get("top")
    memory_limit = resolver.get("memory_limit")
    profile = resolver.get("profile", False)
    profile_output_file = resolver.get("profile_output", "profile_stats.prof")
    output = output or resolver.get("output")

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not no_color:
        colorama_init()
    reporter = ProgressReporter(quiet=quiet, verbose=verbose, use_colors=not no_color)

    if resolver.get("dry_run", False):
        reporter.info("DRY RUN MODE - No requests will be issued")
        reporter.info(f"Repository: {repository}")
        if remote:
            client = SmartHttpClient(repository, proxy=proxy, timeout=timeout, agent=agent)
            reporter.info(f"Discovery: GET {client.discovery_url}")
            reporter.info(f"Negotiation: POST {client.negotiation_url}")
            reporter.info(f"Agent: {agent}")
            reporter.info(f"Timeout: {timeout}s")
        else:
            reporter.info("Source: local clone")
        if memory_limit:
            reporter.info(f"Memory limit: {memory_limit} MB")
        return

    if not output:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = extract_repository_name(os.path.abspath(repository) if not remote else repository)
        output = f"changemap_{name or 'output'}_{timestamp}"
    profile_path = os.path.join(output, profile_output_file) if profile else None
    if profile:
        os.makedirs(output, exist_ok=True)

    with ProfilingContext(enabled=profile, output_path=profile_path):
        analyzer = RepositoryAnalyzer(
            repository,
            proxy=proxy,
            timeout=timeout,
            agent=agent,
            reporter=reporter,
            memory_limit_mb=memory_limit,
        )
        result = asyncio.run(analyzer.run())

    if not result.success:
        reporter.error(f"Analysis failed: {result.error_message}")
        sys.exit(1)

    manifest = export_analysis(result, output, repository)
    reporter.info(f"Output directory: {output}")

    summary_stats = {
        "Repository": repository,
        "HEAD": result.head_reference,
        "Commits walked": f"{result.commits_walked:,}",
        "Files": f"{result.root.num_files:,}",
        "Changes (root)": f"{result.root.num_changes:,}",
        "Datasets generated": len(manifest["datasets"]),
    }
    monitor = analyzer.memory_monitor
    if monitor.peak_mb:
        summary_stats["Peak memory"] = f"{monitor.peak_mb:.1f} MB (after {monitor.peak_stage})"
    reporter.summary(summary_stats)

    if top:
        reporter.info(f"Top {top} most changed files:")
        for path, count in hotspots(result.root, top):
            line = f"  {count:>6}  {path}"
            if remote:
                line += f"  {build_file_url(repository, path, result.head_reference)}"
            reporter.info(line)

    reporter.success(f"Analysis complete! Results saved to: {output}")


if __name__ == "__main__":
    main()
