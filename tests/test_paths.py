from __future__ import annotations

import pytest
from hypothesis import given, strategies as st

from edgecdn.edge.paths import ResourceIdentity, parse_resource_identity, request_resource_key, resource_key

segment = st.text(alphabet=st.characters(min_codepoint=33, max_codepoint=126, exclude_characters="/"), min_size=1)
plain_segment = segment.filter(lambda value: value not in {"data", "versions"})


def test_parses_download_path() -> None:
    assert parse_resource_identity("data/abc123/versions/v2/file.jar") == ResourceIdentity(
        project_id="abc123",
        version_id="v2",
        file_name="file.jar",
    )


def test_parses_prefixed_download_path() -> None:
    identity = parse_resource_identity("mirror/data/AABBCC/versions/1.0.0/mod.jar")
    assert identity is not None
    assert (identity.project_id, identity.version_id) == ("AABBCC", "1.0.0")


@pytest.mark.parametrize(
    "path",
    [
        "unrelated/path",
        "data/abc123/file.jar",
        "versions/v2/file.jar",
        "",
        "data/abc123/versions",
        "data/abc123/versions/",
        "versions/v1/data",
    ],
)
def test_non_matching_paths_have_no_identity(path: str) -> None:
    assert parse_resource_identity(path) is None


def test_first_anchor_wins() -> None:
    identity = parse_resource_identity("data/first/data/second/versions/v1/versions/v2/f")
    assert identity is not None
    assert identity.project_id == "first"
    assert identity.version_id == "v1"


@given(plain_segment, plain_segment, st.lists(plain_segment, max_size=3), st.lists(plain_segment, max_size=3))
def test_identity_extracted_from_any_download_path(project, version, prefix, suffix) -> None:
    path = "/".join([*prefix, "data", project, "versions", version, *suffix])
    identity = parse_resource_identity(path)
    assert identity is not None
    assert identity.project_id == project
    assert identity.version_id == version


@given(st.lists(plain_segment, max_size=6))
def test_paths_without_anchors_have_no_identity(parts) -> None:
    assert parse_resource_identity("/".join(parts)) is None


def test_resource_key_strips_one_leading_slash() -> None:
    assert resource_key("/data/x") == "data/x"
    assert resource_key("//double") == "/double"
    assert resource_key("relative") == "relative"
    assert resource_key("/") == ""


def test_request_resource_key_keeps_percent_escapes(make_request) -> None:
    request = make_request("GET", "/files/a/b")
    request.scope["raw_path"] = b"/files/my%20mod.jar?x=1"
    assert request_resource_key(request) == "files/my%20mod.jar"


def test_request_resource_key_falls_back_to_path(make_request) -> None:
    request = make_request("GET", "/files/plain.jar")
    del request.scope["raw_path"]
    assert request_resource_key(request) == "files/plain.jar"
