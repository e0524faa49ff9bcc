"""Tests for the filesystem-backed requirements directory."""

from __future__ import annotations

from pathlib import Path
from uuid import uuid4

import pytest
import yaml

from reqgraph.config import Config, LoadPolicy
from reqgraph.domain.hrid import parse
from reqgraph.domain.requirement import ParentLink, Requirement
from reqgraph.domain.tree import LinkState
from reqgraph.errors import (
    ConfigError,
    CycleDetected,
    DuplicateHrid,
    DuplicateUuid,
    FlushError,
    IoError,
    NotFound,
    ParseError,
    UnrecognisedDocument,
)
from reqgraph.storage import markdown
from reqgraph.storage.directory import Directory, LoadWarning, discover


def write(path: Path, requirement: Requirement) -> Requirement:
    markdown.dump(requirement, path)
    return requirement


def req(text: str, title: str = "", body: str = "", **kwargs) -> Requirement:
    return Requirement(hrid=parse(text), title=title, body=body, **kwargs)


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def directory(tmp_path: Path, config: Config) -> Directory:
    return Directory.open(tmp_path, config)


class TestDiscover:
    def test_skips_hidden_and_config_folders(self, tmp_path: Path):
        for rel in ["USR-001.md", "sub/SYS-001.md", ".req/templates/SYS.md", ".git/notes.md", "notes.txt"]:
            path = tmp_path / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("x")
        found = sorted(p.relative_to(tmp_path).as_posix() for p in discover(tmp_path))
        assert found == ["USR-001.md", "sub/SYS-001.md"]


class TestLoad:
    def test_empty(self, directory: Directory):
        assert directory.requirements() == []
        assert directory.warnings == []

    def test_missing_root(self, tmp_path: Path, config: Config):
        with pytest.raises(IoError):
            Directory.open(tmp_path / "missing", config)

    def test_loads_links(self, tmp_path: Path, config: Config):
        parent = write(tmp_path / "USR-001.md", req("USR-001", "Login"))
        child = req("SYS-001", "Sessions")
        child.parents.append(ParentLink(parent.uuid, parent.hrid, parent.fingerprint()))
        write(tmp_path / "nested" / "SYS-001.md", child)

        directory = Directory.open(tmp_path, config)
        assert [str(r.hrid) for r in directory.requirements()] == ["SYS-001", "USR-001"]
        assert directory.children("USR-001")[0].uuid == child.uuid
        assert directory.parents("SYS-001")[0].uuid == parent.uuid
        assert directory.path_for("SYS-001") == tmp_path / "nested" / "SYS-001.md"
        assert directory.suspect_links() == []

    def test_flush_is_byte_identical(self, tmp_path: Path, config: Config):
        parent = write(tmp_path / "USR-001.md", req("USR-001", "Login", "Users log in.", tags={"auth"}))
        child = req("SYS-001", "Sessions", "Line one.\n\nLine two.")
        child.parents.append(ParentLink(parent.uuid, parent.hrid, parent.fingerprint(), reviewed=True))
        write(tmp_path / "SYS-001.md", child)
        before = {p.name: p.read_bytes() for p in tmp_path.glob("*.md")}

        directory = Directory.open(tmp_path, config)
        assert len(directory.flush(full=True)) == 2
        after = {p.name: p.read_bytes() for p in tmp_path.glob("*.md")}
        assert after == before


class TestLoadPolicy:
    @pytest.fixture
    def tree_with_bad_file(self, tmp_path: Path) -> Path:
        write(tmp_path / "USR-001.md", req("USR-001", "Good"))
        write(tmp_path / "USR-002.md", req("USR-002", "Also good"))
        bad = tmp_path / "USR-003.md"
        bad.write_text("---\nuuid: [broken\n---\n\n# USR-003\n")
        return bad

    def test_strict_load_fails_citing_the_document(self, tmp_path: Path, tree_with_bad_file: Path):
        with pytest.raises(ParseError) as exc:
            Directory.open(tmp_path, Config())
        assert exc.value.location == tree_with_bad_file

    def test_lenient_load_excludes_it_with_one_warning(self, tmp_path: Path, tree_with_bad_file: Path):
        directory = Directory.open(tmp_path, Config(policy=LoadPolicy(allow_invalid=True)))
        assert [str(r.hrid) for r in directory.requirements()] == ["USR-001", "USR-002"]
        assert len(directory.warnings) == 1
        assert isinstance(directory.warnings[0], LoadWarning)
        assert directory.warnings[0].location == tree_with_bad_file

    def test_unrecognised_strict(self, tmp_path: Path):
        (tmp_path / "README.md").write_text("# Requirements\n")
        with pytest.raises(UnrecognisedDocument, match="README.md"):
            Directory.open(tmp_path, Config())

    def test_unrecognised_allowed_is_skipped_silently(self, tmp_path: Path):
        (tmp_path / "README.md").write_text("# Requirements\n")
        write(tmp_path / "USR-001.md", req("USR-001"))
        directory = Directory.open(tmp_path, Config(policy=LoadPolicy(allow_unrecognised=True)))
        assert len(directory.requirements()) == 1
        assert directory.warnings == []

    def test_heading_disagreeing_with_location_is_invalid(self, tmp_path: Path):
        write(tmp_path / "USR-001.md", req("USR-001"))
        (tmp_path / "USR-002.md").write_text((tmp_path / "USR-001.md").read_text())

        with pytest.raises(ParseError, match="does not match"):
            Directory.open(tmp_path, Config(policy=LoadPolicy(allow_unrecognised=True)))
        directory = Directory.open(tmp_path, Config(policy=LoadPolicy(allow_invalid=True)))
        assert [w.location.name for w in directory.warnings] == ["USR-002.md"]

    def test_path_layout_misfiled_document_is_unrecognised(self, tmp_path: Path):
        write(tmp_path / "USR" / "001.md", req("USR-001"))
        write(tmp_path / "docs" / "intro.md", req("USR-002"))
        with pytest.raises(UnrecognisedDocument):
            Directory.open(tmp_path, Config(layout="path", policy=LoadPolicy(allow_invalid=True)))
        directory = Directory.open(tmp_path, Config(layout="path", policy=LoadPolicy(allow_unrecognised=True)))
        assert [str(r.hrid) for r in directory.requirements()] == ["USR-001"]

    def test_disallowed_kind_is_invalid(self, tmp_path: Path):
        write(tmp_path / "TST-001.md", req("TST-001"))
        config = Config(allowed_kinds=["USR", "SYS"])
        with pytest.raises(ParseError, match="not allowed"):
            Directory.open(tmp_path, config)
        config.policy.allow_invalid = True
        assert Directory.open(tmp_path, config).requirements() == []


class TestLoadIntegrity:
    def test_duplicate_uuid_names_both_documents(self, tmp_path: Path, config: Config):
        first = write(tmp_path / "USR-001.md", req("USR-001"))
        write(tmp_path / "USR-002.md", req("USR-002", uuid=first.uuid))
        with pytest.raises(DuplicateUuid) as exc:
            Directory.open(tmp_path, config)
        assert exc.value.existing_source == tmp_path / "USR-001.md"
        assert exc.value.rejected_source == tmp_path / "USR-002.md"

    def test_duplicate_hrid_keeps_first_in_path_order(self, tmp_path: Path, config: Config):
        write(tmp_path / "a" / "USR-001.md", req("USR-001"))
        write(tmp_path / "b" / "USR-001.md", req("USR-001"))
        with pytest.raises(DuplicateHrid) as exc:
            Directory.open(tmp_path, config)
        assert exc.value.existing_source == tmp_path / "a" / "USR-001.md"
        assert exc.value.rejected_source == tmp_path / "b" / "USR-001.md"

    def test_duplicates_are_fatal_even_when_lenient(self, tmp_path: Path):
        first = write(tmp_path / "USR-001.md", req("USR-001"))
        write(tmp_path / "USR-002.md", req("USR-002", uuid=first.uuid))
        lenient = Config(policy=LoadPolicy(allow_invalid=True, allow_unrecognised=True))
        with pytest.raises(DuplicateUuid):
            Directory.open(tmp_path, lenient)

    def test_cycle_on_disk(self, tmp_path: Path, config: Config):
        a, b = req("SYS-001"), req("SYS-002")
        a.parents.append(ParentLink(b.uuid, b.hrid, b.fingerprint()))
        b.parents.append(ParentLink(a.uuid, a.hrid, a.fingerprint()))
        write(tmp_path / "SYS-001.md", a)
        write(tmp_path / "SYS-002.md", b)
        with pytest.raises(CycleDetected) as exc:
            Directory.open(tmp_path, config)
        assert exc.value.location == tmp_path / "SYS-001.md"


class TestCreate:
    def test_create_and_flush(self, tmp_path: Path, directory: Directory):
        usr = directory.create("usr", "Login")
        sys = directory.create("SYS", "Sessions", "Expire.", parents=["USR-001"], tags=["auth"])
        assert str(usr.hrid) == "USR-001"
        assert str(sys.hrid) == "SYS-001"
        assert [str(h) for h in directory.dirty] == ["SYS-001", "USR-001"]

        assert [str(h) for h in directory.flush()] == ["SYS-001", "USR-001"]
        assert directory.dirty == []
        assert (tmp_path / "USR-001.md").exists()

        reloaded = Directory.open(tmp_path, directory.config)
        loaded = reloaded.get("SYS-001")
        assert loaded.uuid == sys.uuid
        assert loaded.tags == {"auth"}
        assert loaded.parents[0].uuid == usr.uuid

    def test_namespace(self, directory: Directory):
        assert str(directory.create("SYS", namespace=["Auth"]).hrid) == "auth-SYS-001"
        assert str(directory.create("SYS").hrid) == "SYS-001"

    def test_disallowed_kind(self, tmp_path: Path):
        directory = Directory.open(tmp_path, Config(allowed_kinds=["USR"]))
        with pytest.raises(ConfigError, match="not allowed"):
            directory.create("SYS")

    def test_unknown_parent_leaves_no_trace(self, directory: Directory):
        with pytest.raises(NotFound):
            directory.create("SYS", parents=["USR-009"])
        assert directory.requirements() == []

    def test_template(self, tmp_path: Path, config: Config):
        templates = tmp_path / ".req" / "templates"
        templates.mkdir(parents=True)
        (templates / "SYS.md").write_text("## Rationale\n")
        (templates / "auth-SYS.md").write_text("## Auth rationale\n")
        directory = Directory.open(tmp_path, config)

        assert directory.create("SYS").body == "## Rationale"
        assert directory.create("SYS", namespace=["auth"]).body == "## Auth rationale"
        assert directory.create("SYS", body="Given").body == "Given"
        assert directory.create("USR").body == ""

    def test_path_layout(self, tmp_path: Path):
        config = Config(layout="path")
        directory = Directory.open(tmp_path, config)
        directory.create("SYS", namespace=["auth"])
        directory.flush()
        assert (tmp_path / "auth" / "SYS" / "001.md").exists()
        assert str(Directory.open(tmp_path, config).requirements()[0].hrid) == "auth-SYS-001"


class TestMutations:
    @pytest.fixture
    def populated(self, directory: Directory) -> Directory:
        directory.create("USR", "Login", "Users log in.")
        directory.create("USR", "Logout")
        directory.create("SYS", "Sessions", parents=["USR-001", "USR-002"])
        directory.flush()
        return directory

    def test_edit_makes_link_stale_across_reload(self, tmp_path: Path, populated: Directory):
        populated.edit("USR-001", body="Users log in with SSO.")
        populated.flush()

        reloaded = Directory.open(tmp_path, populated.config)
        [suspect] = reloaded.suspect_links()
        assert (str(suspect.child_hrid), str(suspect.parent_hrid)) == ("SYS-001", "USR-001")
        assert suspect.kind is LinkState.STALE

        reloaded.review("SYS-001", "USR-001")
        assert reloaded.suspect_links() == []
        assert [str(h) for h in reloaded.flush()] == ["SYS-001"]

    def test_review_all(self, populated: Directory):
        populated.edit("USR-001", title="Sign in")
        populated.edit("USR-002", title="Sign out")
        assert [(str(c), str(p)) for c, p in populated.review_all()] == [
            ("SYS-001", "USR-001"),
            ("SYS-001", "USR-002"),
        ]
        assert populated.suspect_links() == []

    def test_link_and_unlink(self, populated: Directory):
        populated.create("SWR", "Timer")
        populated.link("SWR-001", "SYS-001")
        assert [str(r.hrid) for r in populated.ancestors("SWR-001")] == ["SYS-001", "USR-001", "USR-002"]
        assert [str(r.hrid) for r in populated.descendants("USR-001")] == ["SYS-001", "SWR-001"]
        populated.unlink("SWR-001", "SYS-001")
        assert populated.parents("SWR-001") == []

    def test_link_cycle(self, populated: Directory):
        with pytest.raises(CycleDetected):
            populated.link("USR-001", "SYS-001")
        assert populated.get("USR-001").parents == []

    def test_delete(self, tmp_path: Path, populated: Directory):
        removed, dangling = populated.delete("USR-002")
        assert str(removed.hrid) == "USR-002"
        assert [str(d.child_hrid) for d in dangling] == ["SYS-001"]
        populated.flush()
        assert not (tmp_path / "USR-002.md").exists()

        reloaded = Directory.open(tmp_path, populated.config)
        [suspect] = reloaded.suspect_links()
        assert suspect.kind is LinkState.DANGLING
        reloaded.unlink("SYS-001", "USR-002")
        assert reloaded.suspect_links() == []

    def test_numbers_survive_delete_and_reload(self, tmp_path: Path, populated: Directory):
        populated.delete("SYS-001")
        populated.flush()
        marks = yaml.safe_load((tmp_path / ".req" / "sequence.yaml").read_text())
        assert marks == {"SYS": 1, "USR": 2}

        reloaded = Directory.open(tmp_path, populated.config)
        assert str(reloaded.create("SYS").hrid) == "SYS-002"

    def test_delete_and_orphan(self, tmp_path: Path, populated: Directory):
        removed, orphaned = populated.delete_and_orphan("USR-001")
        assert str(removed.hrid) == "USR-001"
        assert [str(h) for h in orphaned] == ["SYS-001"]
        assert [str(link.hrid) for link in populated.get("SYS-001").parents] == ["USR-002"]
        assert [str(h) for h in populated.dirty] == ["SYS-001"]

        populated.flush()
        assert not (tmp_path / "USR-001.md").exists()
        assert Directory.open(tmp_path, populated.config).suspect_links() == []

    @pytest.fixture
    def deeper(self, populated: Directory) -> Directory:
        populated.create("SWR", "Timer", parents=["SYS-001"])
        populated.create("SYS", "Audit", parents=["USR-001"])
        populated.flush()
        return populated

    def test_find_orphaned_descendants(self, deeper: Directory):
        assert [str(h) for h in deeper.find_orphaned_descendants("USR-001")] == ["SYS-002", "USR-001"]
        assert [str(h) for h in deeper.find_orphaned_descendants("USR-002")] == ["SWR-001", "SYS-001", "USR-002"]
        assert [str(h) for h in deeper.find_orphaned_descendants("SWR-001")] == ["SWR-001"]
        assert len(deeper.requirements()) == 5
        assert deeper.dirty == []

    def test_delete_cascade(self, tmp_path: Path, deeper: Directory):
        removed = deeper.delete_cascade("USR-002")
        assert [str(r.hrid) for r in removed] == ["SWR-001", "SYS-001", "USR-002"]
        assert [str(r.hrid) for r in deeper.requirements()] == ["SYS-002", "USR-001"]

        deeper.flush()
        assert sorted(p.name for p in tmp_path.glob("*.md")) == ["SYS-002.md", "USR-001.md"]
        reloaded = Directory.open(tmp_path, deeper.config)
        assert reloaded.suspect_links() == []
        assert str(reloaded.create("SYS").hrid) == "SYS-003"

    def test_rename(self, tmp_path: Path, populated: Directory):
        assert [str(h) for h in populated.rename("USR-001", "USR-010")] == ["SYS-001"]
        populated.flush()
        assert not (tmp_path / "USR-001.md").exists()
        assert (tmp_path / "USR-010.md").exists()

        reloaded = Directory.open(tmp_path, populated.config)
        assert [str(link.hrid) for link in reloaded.get("SYS-001").parents] == ["USR-010", "USR-002"]
        assert reloaded.suspect_links() == []

    def test_refresh_parent_hrids_after_manual_rename(self, tmp_path: Path, populated: Directory):
        text = (tmp_path / "USR-002.md").read_text().replace("# USR-002", "# USR-005")
        (tmp_path / "USR-002.md").unlink()
        (tmp_path / "USR-005.md").write_text(text)

        reloaded = Directory.open(tmp_path, populated.config)
        assert [str(h) for h in reloaded.hrid_drift()] == ["SYS-001"]
        assert [str(h) for h in reloaded.refresh_parent_hrids()] == ["SYS-001"]
        assert reloaded.hrid_drift() == []

    def test_unknown_identifier(self, populated: Directory):
        with pytest.raises(NotFound):
            populated.edit("USR-404", title="x")


class TestContentNormalisation:
    def test_untouched_links_are_not_stale_after_reload(self, tmp_path: Path, directory: Directory):
        directory.create("USR", "Login ", "text\n")
        directory.create("USR", "Logout", "\n\nleading blank lines")
        directory.create("SYS", "Sessions", parents=["USR-001", "USR-002"])
        directory.flush()

        reloaded = Directory.open(tmp_path, directory.config)
        assert reloaded.get("USR-001").title == "Login"
        assert reloaded.get("USR-002").body == "leading blank lines"
        assert reloaded.suspect_links() == []

    def test_reviewed_edit_stays_reviewed_after_reload(self, tmp_path: Path, directory: Directory):
        directory.create("USR", "Login", "Users log in.")
        directory.create("SYS", "Sessions", parents=["USR-001"])
        directory.edit("USR-001", title="Sign in ", body="Users sign in.\n")
        directory.review("SYS-001", "USR-001")
        directory.flush()

        assert Directory.open(tmp_path, directory.config).suspect_links() == []

    def test_multiline_title_rejected_on_create(self, directory: Directory):
        with pytest.raises(ParseError, match="single line"):
            directory.create("USR", "first\nsecond", "body")
        assert directory.requirements() == []
        assert directory.dirty == []
        assert str(directory.create("USR", "first").hrid) == "USR-001"

    def test_multiline_title_rejected_on_edit(self, directory: Directory):
        directory.create("USR", "Login", "Users log in.")
        with pytest.raises(ParseError, match="single line"):
            directory.edit("USR-001", title="a\r\nb", body="changed")
        requirement = directory.get("USR-001")
        assert (requirement.title, requirement.body) == ("Login", "Users log in.")


class TestLocations:
    def test_misplaced_and_relocate(self, tmp_path: Path, config: Config):
        write(tmp_path / "old" / "USR-001.md", req("USR-001"))
        directory = Directory.open(tmp_path, config)
        [(hrid, current, canonical)] = directory.misplaced()
        assert current == tmp_path / "old" / "USR-001.md"
        assert canonical == tmp_path / "USR-001.md"

        directory.relocate()
        assert canonical.exists() and not current.exists()
        assert directory.misplaced() == []
        assert directory.path_for("USR-001") == canonical

    def test_move_keeps_identifier(self, tmp_path: Path, config: Config):
        directory = Directory.open(tmp_path, config)
        directory.create("USR", "Login")
        directory.flush()

        assert directory.move("USR-001", Path("auth") / "USR-001.md") is None
        assert directory.path_for("USR-001") == tmp_path / "auth" / "USR-001.md"
        directory.flush()
        assert not (tmp_path / "USR-001.md").exists()
        assert (tmp_path / "auth" / "USR-001.md").exists()

        reloaded = Directory.open(tmp_path, config)
        assert reloaded.path_for("USR-001") == tmp_path / "auth" / "USR-001.md"
        assert [(str(h), c.name) for h, c, _ in reloaded.misplaced()] == [("USR-001", "USR-001.md")]

    def test_move_to_another_identifier_renames(self, tmp_path: Path, config: Config):
        directory = Directory.open(tmp_path, config)
        directory.create("USR", "Login")
        directory.create("SYS", "Sessions", parents=["USR-001"])
        directory.flush()

        assert [str(h) for h in directory.move("USR-001", tmp_path / "archive" / "USR-011.md")] == ["SYS-001"]
        directory.flush()
        assert not (tmp_path / "USR-001.md").exists()
        assert (tmp_path / "archive" / "USR-011.md").exists()

        reloaded = Directory.open(tmp_path, config)
        assert [str(link.hrid) for link in reloaded.get("SYS-001").parents] == ["USR-011"]
        assert reloaded.suspect_links() == []

    def test_move_to_unrecognised_path(self, tmp_path: Path, config: Config):
        directory = Directory.open(tmp_path, config)
        directory.create("USR", "Login")
        directory.flush()
        with pytest.raises(UnrecognisedDocument):
            directory.move("USR-001", Path("notes.md"))
        assert directory.path_for("USR-001") == tmp_path / "USR-001.md"
        assert directory.dirty == []


class TestFlush:
    def test_only_dirty_documents_are_written(self, tmp_path: Path, directory: Directory):
        directory.create("USR")
        directory.create("USR")
        directory.flush()
        directory.edit("USR-002", title="Changed")
        assert [str(h) for h in directory.flush()] == ["USR-002"]
        assert directory.flush() == []

    def test_failures_are_collected(self, tmp_path: Path, directory: Directory):
        directory.create("USR")
        directory.create("USR")
        (tmp_path / "USR-001.md").mkdir()

        with pytest.raises(FlushError) as exc:
            directory.flush()
        assert [path for path, _ in exc.value.failures] == [tmp_path / "USR-001.md"]
        assert (tmp_path / "USR-002.md").exists()
        assert [str(h) for h in directory.dirty] == ["USR-001"]

    def test_flush_error_message_is_truncated(self):
        failures = [(Path(f"USR-00{n}.md"), OSError("disk full")) for n in range(7)]
        message = str(FlushError(failures))
        assert "USR-004.md" in message
        assert "USR-005.md" not in message
        assert "2 more" in message

    def test_deleted_file_missing_is_fine(self, tmp_path: Path, directory: Directory):
        directory.create("USR")
        directory.flush()
        (tmp_path / "USR-001.md").unlink()
        directory.delete("USR-001")
        assert directory.flush() == []

    def test_numbers_survive_emptying_the_directory(self, tmp_path: Path, directory: Directory):
        directory.create("USR")
        directory.flush()
        directory.delete("USR-001")
        directory.flush()

        reloaded = Directory.open(tmp_path, directory.config)
        assert reloaded.requirements() == []
        assert str(reloaded.create("USR").hrid) == "USR-002"

    def test_parallel_write_of_many(self, tmp_path: Path):
        directory = Directory.open(tmp_path, Config(workers=4))
        for _ in range(40):
            directory.create("TST", str(uuid4()))
        assert len(directory.flush()) == 40
        assert len(Directory.open(tmp_path, Config(workers=4)).requirements()) == 40
