import hashlib
import struct
import zlib
import pytest
from collections import Counter
from dulwich.objects import Blob, Commit, Tree
from dulwich.repo import Repo

from changemap import (
    BLOB, TREE, FLUSH_PKT, CommitNode, TreeEntry, ObjectGraph,
    MissingObjectError, ProgressReporter, encode_frame,
)

HEAD_ID = "1" * 40
REPO_URL = "https://example.com/owner/project"
BASE_URL = "https://example.com/owner/project.git"
REFS_URL = BASE_URL + "/info/refs?service=git-upload-pack"
UPLOAD_URL = BASE_URL + "/git-upload-pack"


class FakeGraph(ObjectGraph):
    """In-memory object graph; records every diff-relevant lookup."""

    def __init__(self):
        self.commits = {}
        self.trees = {}
        self.tree_requests = Counter()

    def tree(self, tree_id, *entries):
        self.trees[tree_id] = [TreeEntry(name, kind, oid) for name, kind, oid in entries]
        return tree_id

    def commit(self, commit_id, tree_id, *parents):
        self.commits[commit_id] = CommitNode(commit_id, tuple(parents), tree_id)
        return commit_id

    async def resolve_commit(self, object_id):
        try:
            return self.commits[object_id]
        except KeyError:
            raise MissingObjectError(object_id) from None

    async def resolve_tree(self, object_id):
        self.tree_requests[object_id] += 1
        try:
            return self.trees[object_id]
        except KeyError:
            raise MissingObjectError(object_id) from None


def advertisement(*ref_lines):
    """Reference advertisement body as served on /info/refs."""
    body = encode_frame("# service=git-upload-pack\n") + FLUSH_PKT
    for line in ref_lines:
        body += encode_frame(line)
    return body + FLUSH_PKT


def head_line(object_id=HEAD_ID):
    return f"{object_id} HEAD\0multi_ack thin-pack side-band ofs-delta filter\n"


def build_pack(objects):
    """Version 2 pack of undeltified objects, trailed by its SHA-1."""
    pack = bytearray(b"PACK" + struct.pack(">II", 2, len(objects)))
    for obj in objects:
        raw = obj.as_raw_string()
        size = len(raw)
        # type in bits 4-6 of the first byte, size as a little-endian varint
        byte = (obj.type_num << 4) | (size & 0x0F)
        size >>= 4
        while size:
            pack.append(byte | 0x80)
            byte = size & 0x7F
            size >>= 7
        pack.append(byte)
        pack += zlib.compress(raw)
    pack += hashlib.sha1(pack).digest()
    return bytes(pack)


def make_repo(path, objects, head):
    """Bare-bones clone at ``path`` holding ``objects`` with HEAD at ``head``."""
    path.mkdir()
    repo = Repo.init(str(path))
    for obj in objects:
        repo.object_store.add_object(obj)
    repo.refs[b"HEAD"] = head.id
    repo.close()
    return str(path)


def make_commit(tree, parents=(), message=b"change"):
    commit = Commit()
    commit.tree = tree.id
    commit.parents = [p.id for p in parents]
    commit.author = commit.committer = b"Tester <tester@test.com>"
    commit.author_time = commit.commit_time = 1_700_000_000
    commit.author_timezone = commit.commit_timezone = 0
    commit.message = message
    return commit


@pytest.fixture
def quiet_reporter():
    return ProgressReporter(quiet=True)


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def two_commit_history():
    """
    commit1: a.txt (v1), dir/b.txt
    commit2: a.txt (v2), dir/b.txt unchanged
    """
    blob_a1 = Blob.from_string(b"one\n")
    blob_a2 = Blob.from_string(b"two\n")
    blob_b = Blob.from_string(b"bee\n")

    subdir = Tree()
    subdir.add(b"b.txt", 0o100644, blob_b.id)

    tree1 = Tree()
    tree1.add(b"a.txt", 0o100644, blob_a1.id)
    tree1.add(b"dir", 0o040000, subdir.id)

    tree2 = Tree()
    tree2.add(b"a.txt", 0o100644, blob_a2.id)
    tree2.add(b"dir", 0o040000, subdir.id)

    commit1 = make_commit(tree1, message=b"initial")
    commit2 = make_commit(tree2, [commit1], message=b"edit a")

    return {
        "blobs": [blob_a1, blob_a2, blob_b],
        "trees": [subdir, tree1, tree2],
        "commits": [commit1, commit2],
        "head": commit2.id.decode("ascii"),
    }


@pytest.fixture
def pack_bytes(two_commit_history):
    """A blobless pack, as served for filter=blob:none."""
    return build_pack(two_commit_history["trees"] + two_commit_history["commits"])


@pytest.fixture
def local_repo(tmp_path, two_commit_history):
    objects = [
        obj for group in ("blobs", "trees", "commits") for obj in two_commit_history[group]
    ]
    return make_repo(tmp_path / "repo", objects, two_commit_history["commits"][-1])
