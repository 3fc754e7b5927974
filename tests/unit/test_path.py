"""
Unit tests for hierarchical paths.

Tests cover:
- Parsing and rendering
- Parent and ancestor navigation
- Key chain encoding
- Doc-id encoding
"""

import pytest

from hub.datahub_server.backends.base import Key
from hub.datahub_server.errors import IncompleteKeyError, MalformedPathError
from hub.datahub_server.store.path import (
    PATH_KIND,
    ROOT,
    ROOT_KEY,
    Path,
    Segment,
    path_tokens,
)


class TestPathParsing:
    """Tests for Path.from_string and str()."""

    def test_root(self):
        """Empty and slash-only strings are ROOT."""
        assert Path.from_string("/") == ROOT
        assert Path.from_string("") == ROOT
        assert str(ROOT) == "/"
        assert ROOT.is_root

    def test_trailing_slash_ignored(self):
        """A trailing slash does not change the path."""
        assert Path.from_string("/foo/bar/") == Path.from_string("/foo/bar")
        assert str(Path.from_string("/foo/bar/")) == "/foo/bar"

    def test_named_segments(self):
        """Plain names are path-kind segments."""
        path = Path.from_string("/foo/bar")
        assert path.segments == (Segment(PATH_KIND, "foo"), Segment(PATH_KIND, "bar"))
        assert path.filename == "bar"
        assert not path.is_serial

    def test_serial_segment(self):
        """__<n>__ parses as a serial id."""
        path = Path.from_string("/foo/__42__")
        assert path.segments[-1] == Segment(PATH_KIND, id=42)
        assert path.is_serial
        assert str(path) == "/foo/__42__"

    def test_kinded_segment(self):
        """kind(name) carries an explicit kind."""
        path = Path.from_string("/users/user(bob)")
        assert path.segments[-1] == Segment("user", "bob")
        assert str(path) == "/users/user(bob)"
        assert path.filename == "user(bob)"

    @pytest.mark.parametrize(
        "path_str",
        ["/a#b", "/a//b", "/a(b", "/acl(x)", "/schema(y)", "/__0__", "/__007__", "/a /b", "/x/ b"],
    )
    def test_malformed(self, path_str):
        """Bad syntax, reserved kinds, padded serials and padded names are rejected."""
        with pytest.raises(MalformedPathError):
            Path.from_string(path_str)

    def test_malformed_is_value_error(self):
        """MalformedPathError can be handled as ValueError."""
        with pytest.raises(ValueError):
            Path.from_string("/a#")


class TestPathNavigation:
    """Tests for parents and ancestors."""

    def test_parent(self):
        assert Path.from_string("/a/b").get_parent() == Path.from_string("/a")
        assert Path.from_string("/a").get_parent() is ROOT
        assert ROOT.get_parent() is ROOT

    def test_is_parent_of_is_strict(self):
        """is_parent_of holds for ancestors only, never the path itself."""
        a = Path.from_string("/a")
        assert ROOT.is_parent_of(a)
        assert a.is_parent_of(Path.from_string("/a/b/c"))
        assert not a.is_parent_of(a)
        assert not a.is_parent_of(Path.from_string("/ab"))
        assert not Path.from_string("/a/b").is_parent_of(a)

    def test_ancestors(self):
        """ancestors() yields the path itself, then up to ROOT."""
        path = Path.from_string("/a/b")
        assert [str(p) for p in path.ancestors()] == ["/a/b", "/a", "/"]
        assert list(ROOT.ancestors()) == [ROOT]

    def test_child(self):
        assert ROOT.child("a").child(id=3) == Path.from_string("/a/__3__")

    def test_path_tokens(self):
        """Scope tokens list the doc-ids of the path and every ancestor."""
        assert path_tokens(Path.from_string("/a/b")) == "ROOTa_P2Fb ROOTa ROOT"
        assert path_tokens(ROOT) == "ROOT"


class TestKeyEncoding:
    """Tests for the key chain encoding."""

    def test_root_key(self):
        assert ROOT.to_key() == ROOT_KEY
        assert Path.from_key(ROOT_KEY) == ROOT

    def test_key_chain(self):
        """Each segment becomes a key parented by the previous one."""
        key = Path.from_string("/a/__3__").to_key()
        assert key == Key(PATH_KIND, None, 3, Key(PATH_KIND, "a", None, ROOT_KEY))

    @pytest.mark.parametrize("path_str", ["/a", "/a/b/c", "/x/__7__/y", "/users/user(bob)"])
    def test_key_round_trip(self, path_str):
        path = Path.from_string(path_str)
        assert Path.from_key(path.to_key()) == path

    def test_incomplete_key(self):
        """A key without a name or id has no path."""
        with pytest.raises(IncompleteKeyError):
            Path.from_key(Key(PATH_KIND, parent=ROOT_KEY))


class TestDocIdEncoding:
    """Tests for the search-safe doc-id encoding."""

    @pytest.mark.parametrize(
        "path_str, doc_id",
        [
            ("/", "ROOT"),
            ("/foo/bar/", "ROOTfoo_P2Fbar"),
            ("/_U/U__U_P__D/", "ROOT_UU_P2FU_U_UU_UP_U_UD"),
            ("/a.b-c", "ROOTa_Db_Mc"),
            ("/a b", "ROOTa_Lb"),
            ("/a*b", "ROOTa_Sb"),
            ("/__5__", "ROOT_U_U5_U_U"),
            ("/users/user(bob)", "ROOTusers_P2Fuser_P28bob_P29"),
        ],
    )
    def test_doc_id(self, path_str, doc_id):
        """Known encodings; decoding gives the path back."""
        path = Path.from_string(path_str)
        assert path.to_doc_id() == doc_id
        assert Path.from_doc_id(doc_id) == path

    def test_trailing_slash_doc_id(self):
        """/foo/bar/ and /foo/bar encode alike and decode to /foo/bar."""
        with_slash = Path.from_string("/foo/bar/").to_doc_id()
        assert with_slash == Path.from_string("/foo/bar").to_doc_id()
        assert str(Path.from_doc_id(with_slash)) == "/foo/bar"

    def test_doc_id_alphabet(self):
        """Doc-ids only use letters, digits and '_'."""
        doc_id = Path.from_string("/weird name/with.dots-and*stars+plus%/ü").to_doc_id()
        assert all(c.isascii() and (c.isalnum() or c == "_") for c in doc_id)

    def test_invalid_escape(self):
        """Unknown _X escapes are rejected."""
        with pytest.raises(MalformedPathError):
            Path.from_doc_id("ROOT_Xa")

    @pytest.mark.parametrize(
        "path_str",
        [
            "/",
            "/a",
            "a/b/c/",
            "  /padded/outside  ",
            "/ROOT/ROOTx",
            "/_P/_U_/__/_",
            "/%41%/%25",
            "/a_Pb/c_Ud",
            "/x/__12__/y/__3__",
            "/users/user(bob)/msg(__9__)",
            "/dots.dashes-stars*plus+",
            "/with space/and  two",
            "/ünï/中文/emoji😀",
            "/'quote\"/semi;colon/amp&eq=q?",
            "/__7/7__/___/____5____",
        ],
    )
    def test_doc_id_round_trip(self, path_str):
        """Decoding an encoded path gives its normalized string back."""
        path = Path.from_string(path_str)
        decoded = Path.from_doc_id(path.to_doc_id())
        assert decoded == path
        assert str(decoded) == "/" + path_str.strip().strip("/")

    @pytest.mark.parametrize("path_str", ["/a", "/x/__12__", "/users/user(bob)", "/a b/c.d"])
    def test_string_round_trip(self, path_str):
        """Rendering and reparsing a path gives the same path."""
        path = Path.from_string(path_str)
        assert Path.from_string(str(path)) == path
