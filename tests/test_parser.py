import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ash.errors import DocumentParseError, MalformedFieldError
from ash.model import SEGMENT_ADDED, SEGMENT_CONTEXT, SEGMENT_REMOVED, changeset_from_payload
from ash.parser import ChangesetParser, parse_changeset, parse_lines, parse_timestamp
from ash.writer import format_timestamp, render_changeset

from tests.test_model import make_payload


def comment_summary(changeset):
    return [
        (
            comment.id,
            comment.text,
            comment.anchor.line,
            comment.anchor.line_type,
            parent.id if parent else None,
        )
        for _diff, comment, parent in changeset.iter_comments()
    ]


class TestParser(unittest.TestCase):
    def test_segment_boundaries_and_line_numbers(self):
        changeset = parse_changeset(
            "--- a.txt\n"
            "+++ a.txt\n"
            "@@ -10,3 +10,4 @@\n"
            " one\n"
            "-two\n"
            "+three\n"
            "+four\n"
            " five\n"
        )
        hunk = changeset.diffs[0].hunks[0]
        self.assertEqual(
            [(segment.type, len(segment.lines)) for segment in hunk.segments],
            [(SEGMENT_CONTEXT, 1), (SEGMENT_REMOVED, 1), (SEGMENT_ADDED, 2), (SEGMENT_CONTEXT, 1)],
        )
        context, removed, added, trailing = hunk.segments
        self.assertEqual((context.lines[0].source, context.lines[0].destination), (10, 10))
        self.assertEqual(removed.lines[0].source, 11)
        self.assertEqual([line.destination for line in added.lines], [11, 12])
        self.assertEqual([line.source for line in added.lines], [11, 11])
        self.assertEqual((trailing.lines[0].source, trailing.lines[0].destination), (12, 13))

    def test_headers_set_paths_and_revisions(self):
        changeset = parse_changeset("--- /dev/null\tabc\n+++ new.txt\tdef\n@@ -0,0 +1,1 @@\n+x\n")
        diff = changeset.diffs[0]
        self.assertEqual(diff.source, "")
        self.assertEqual(diff.destination, "new.txt")
        self.assertEqual(changeset.from_hash, "abc")
        self.assertEqual(changeset.to_hash, "def")
        self.assertEqual(changeset.path, "new.txt")

    def test_round_trip_preserves_structure_and_comments(self):
        original = changeset_from_payload(make_payload())
        parsed = parse_changeset(render_changeset(original))

        self.assertEqual(parsed.diffs[0].path, original.diffs[0].path)
        def shape(changeset):
            return [
                (hunk.source_line, hunk.source_span, segment.type, [line.text for line in segment.lines])
                for hunk in changeset.diffs[0].hunks
                for segment in hunk.segments
            ]

        self.assertEqual(shape(parsed), shape(original))
        self.assertEqual(comment_summary(parsed), comment_summary(original))
        self.assertEqual(
            [(line.source, line.destination) for _d, _h, _s, line in parsed.iter_lines()],
            [(line.source, line.destination) for _d, _h, _s, line in original.iter_lines()],
        )

    def test_round_trip_keeps_authors_and_timestamps(self):
        original = changeset_from_payload(make_payload())
        parsed = parse_changeset(render_changeset(original))
        authors = [(comment.author, comment.updated_date) for _diff, comment, _parent in parsed.iter_comments()]
        self.assertEqual(authors, [("Alice", 1400000000000), ("Bob", 1400000100000), ("carol", 1400000200000)])

    def test_bare_comment_is_new_and_anchored_to_line(self):
        changeset = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,3 @@\n first\n+second\n+third\n# hello\n#   world\n"
        )
        [(diff, comment, parent)] = list(changeset.iter_comments())
        self.assertEqual(comment.id, 0)
        self.assertIsNone(parent)
        self.assertEqual(comment.text, "hello\n  world")
        self.assertEqual((comment.anchor.line, comment.anchor.line_type), (3, SEGMENT_ADDED))
        self.assertEqual(comment.anchor.path, "a.txt")
        self.assertIn(comment, diff.comments)

    def test_reply_parent_is_nearest_shallower_comment(self):
        ts = format_timestamp(1400000000000)
        changeset = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n first\n"
            f"# ---\n#\n# [1] | A | {ts}\n#\n# root\n#\n# ---\n"
            f"#\n#     [2] | B | {ts}\n#\n#     child\n#\n#     ---\n"
            f"#\n#         [3] | C | {ts}\n#\n#         grandchild\n#\n#         ---\n"
            f"#\n#     [4] | D | {ts}\n#\n#     second child\n#\n#     ---\n"
        )
        parents = {comment.id: parent.id if parent else None for _diff, comment, parent in changeset.iter_comments()}
        self.assertEqual(parents, {1: None, 2: 1, 3: 2, 4: 1})
        texts = {comment.id: comment.text for _diff, comment, _parent in changeset.iter_comments()}
        self.assertEqual(texts[3], "grandchild")

    def test_each_comment_registered_once(self):
        ts = format_timestamp(1400000000000)
        changeset = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n first\n"
            f"# ---\n#\n# [1] | A | {ts}\n#\n# root\n# more\n#\n# ---\n#     reply\n"
        )
        diff = changeset.diffs[0]
        self.assertEqual([comment.id for comment in diff.comments], [1, 0])
        self.assertEqual(diff.comments[0].text, "root\nmore")
        self.assertEqual(diff.comments[0].replies, [1])

    def test_unknown_diff_header_line_is_fatal(self):
        with self.assertRaises(DocumentParseError) as ctx:
            parse_changeset("--- a.txt\nsomething else\n")
        self.assertEqual(ctx.exception.lineno, 2)
        self.assertIn("expected diff header", str(ctx.exception))

    def test_stray_lines_in_body_are_ignored(self):
        changeset = parse_changeset("--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n first\n\nstray text\n")
        self.assertEqual(len(changeset.diffs[0].hunks[0].segments[0].lines), 1)

    def test_blank_line_after_comment_is_ignored(self):
        changeset = parse_changeset("--- a.txt\n+++ a.txt\n@@ -1,3 +1,3 @@\n a\n# one\n\n b\n c\n# two\n")
        anchors = [(comment.text, comment.anchor.line) for _diff, comment, _parent in changeset.iter_comments()]
        self.assertEqual(anchors, [("one", 1), ("two", 3)])
        lines = changeset.diffs[0].hunks[0].segments[0].lines
        self.assertEqual([line.text for line in lines], ["a", "b", "c"])

    def test_escaped_comment_text_is_restored(self):
        ts = format_timestamp(1400000000000)
        changeset = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n x\n"
            f"# ---\n#\n# [1] | A | {ts}\n#\n# above\n# \\---\n# \\[2] | B | c\n# \\\\path\n#\n# ---\n"
        )
        [(_diff, comment, _parent)] = list(changeset.iter_comments())
        self.assertEqual(comment.text, "above\n---\n[2] | B | c\n\\path")

    def test_blank_line_inside_open_hunk_is_empty_context(self):
        changeset = parse_changeset("--- a.txt\n+++ a.txt\n@@ -1,3 +1,3 @@\n a\n\n c\n")
        lines = changeset.diffs[0].hunks[0].segments[0].lines
        self.assertEqual([line.text for line in lines], ["a", "", "c"])
        self.assertEqual([line.source for line in lines], [1, 2, 3])

    def test_removed_line_looking_like_header_stays_in_open_hunk(self):
        changeset = parse_changeset("--- a.txt\n+++ a.txt\n@@ -1,2 +1,0 @@\n-x\n--- y\n")
        self.assertEqual(len(changeset.diffs), 1)
        removed = changeset.diffs[0].hunks[0].segments[0]
        self.assertEqual([line.text for line in removed.lines], ["x", "-- y"])

    def test_next_diff_starts_after_complete_hunk(self):
        changeset = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n-x\n+y\n\n--- b.txt\n+++ b.txt\n@@ -1,1 +1,1 @@\n z\n"
        )
        self.assertEqual([diff.path for diff in changeset.diffs], ["a.txt", "b.txt"])
        self.assertEqual(changeset.path, "a.txt")

    def test_comments_before_first_hunk_are_file_comments(self):
        changeset = parse_changeset("--- a.txt\n+++ b.txt\n# ---\n# about the file\n# ---\n@@ -1,1 +1,1 @@\n x\n")
        diff = changeset.diffs[0]
        self.assertEqual(len(diff.file_comments), 1)
        comment = diff.comment(diff.file_comments[0])
        self.assertTrue(comment.anchor.is_file_anchor)
        self.assertEqual((comment.anchor.path, comment.anchor.src_path), ("b.txt", "a.txt"))

    def test_comments_after_note_are_review_level(self):
        changeset = parse_changeset("### Approved by Alice\n\n###\n# ---\n# overall fine\n# ---\n")
        [(diff, comment, parent)] = list(changeset.iter_comments())
        self.assertFalse(diff.has_paths)
        self.assertEqual(comment.text, "overall fine")
        self.assertFalse(comment.anchor.is_line_anchor or comment.anchor.is_file_anchor)

    def test_note_closes_line_context(self):
        changeset = parse_changeset("--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n x\n### note\n# detached\n")
        self.assertEqual(changeset.diffs[0].hunks[0].segments[0].lines[0].comment_refs, [])
        self.assertEqual(len(changeset.diffs), 2)
        self.assertEqual(changeset.diffs[1].comment(changeset.diffs[1].file_comments[0]).text, "detached")

    def test_malformed_hunk_numbers_are_recorded(self):
        changeset, warnings = parse_lines(["--- a.txt", "+++ a.txt", "@@ -x,1 +1,1 @@", " a"])
        self.assertEqual(changeset.diffs[0].hunks[0].source_line, 0)
        self.assertEqual(len(warnings), 1)
        self.assertIn("line 3", warnings[0])
        self.assertIn("hunk source line", warnings[0])

    def test_malformed_fields_raise_in_strict_mode(self):
        with self.assertRaises(MalformedFieldError) as ctx:
            parse_changeset("--- a.txt\n+++ a.txt\n@@ -x,1 +1,1 @@\n a\n", strict=True)
        self.assertEqual(ctx.exception.field, "hunk source line")
        self.assertEqual(ctx.exception.value, "x")

    def test_malformed_timestamp_is_recorded(self):
        parser = ChangesetParser()
        for line in ["--- a.txt", "+++ a.txt", "@@ -1,1 +1,1 @@", " a", "# ---", "# [5] | A | yesterday", "# text"]:
            parser.feed(line)
        changeset = parser.finish()
        comment = changeset.diffs[0].comments[0]
        self.assertEqual(comment.id, 5)
        self.assertEqual(comment.updated_date, 0)
        self.assertEqual(len(parser.warnings), 1)

    def test_parse_timestamp_accepts_padded_day(self):
        value = format_timestamp(1400000000000)
        self.assertEqual(parse_timestamp(value), 1400000000000)


if __name__ == "__main__":
    unittest.main()
