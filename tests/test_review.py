import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ash.activity import build_overview, decode_activities
from ash.model import SEGMENT_ADDED, changeset_from_payload
from ash.parser import parse_changeset
from ash.review import (
    USAGE_TEXT,
    VIM_MODELINE,
    CommentModified,
    CommentRemoved,
    FileCommentAdded,
    LineCommentAdded,
    ReplyAdded,
    Review,
    ReviewCommentAdded,
    compare_changesets,
    normalize_comment_text,
    read_review,
)
from ash.writer import format_timestamp

from tests.test_model import make_payload

SIMPLE_DIFF = "--- a.txt\tf1\n+++ a.txt\tt2\n@@ -1,1 +1,3 @@\n first\n+second\n+third\n"


def saved_review():
    return Review(changeset_from_payload(make_payload(), path="src/app.py"))


def remove_block(lines, comment_id):
    header = next(index for index, line in enumerate(lines) if line.startswith(f"# [{comment_id}] |"))
    start = header - 2
    end = lines.index("#     ---", header) + 1
    return lines[:start] + lines[end:]


class TestCompare(unittest.TestCase):
    def test_unchanged_document_has_no_changes(self):
        review = saved_review()
        self.assertEqual(review.compare(read_review(review.render())), [])

    def test_notes_do_not_produce_changes(self):
        review = saved_review()
        review.add_usage_note()
        review.add_files_note(["src/app.py"])
        review.add_modeline("http://stash/projects/P/repos/r/pull-requests/1")
        self.assertEqual(review.compare(read_review(review.render())), [])

    def test_new_line_comment(self):
        original = Review(parse_changeset(SIMPLE_DIFF))
        edited = read_review(SIMPLE_DIFF + "# hello\n")

        [change] = original.compare(edited)
        self.assertIsInstance(change, LineCommentAdded)
        self.assertEqual(change.comment.text, "hello")
        self.assertEqual(
            change.payload(),
            {
                "text": "hello",
                "anchor": {
                    "line": 3,
                    "lineType": SEGMENT_ADDED,
                    "fileType": "TO",
                    "path": "a.txt",
                    "srcPath": "a.txt",
                    "commitRange": {
                        "sinceRevision": {"id": "f1"},
                        "untilRevision": {"id": "t2"},
                    },
                },
            },
        )
        self.assertIn("a.txt:3", change.describe())

    def test_reply_to_saved_comment(self):
        review = saved_review()
        lines = review.render().splitlines()
        closing = lines.index("#     ---")
        lines.insert(closing + 1, "#     I agree")

        [change] = review.compare(read_review("\n".join(lines) + "\n"))
        self.assertIsInstance(change, ReplyAdded)
        self.assertEqual(change.parent.id, 1234)
        self.assertEqual(change.payload(), {"text": "I agree", "parent": {"id": 1234}})

    def test_modified_comment_carries_saved_version(self):
        review = saved_review()
        edited = read_review(review.render().replace("# bla\n", "# bla2\n"))

        [change] = review.compare(edited)
        self.assertIsInstance(change, CommentModified)
        self.assertEqual(change.payload(), {"text": "bla2", "id": 1235, "version": 1})

    def test_text_with_delimiter_lines_survives_round_trip(self):
        payload = make_payload()
        payload["diffs"][0]["lineComments"][1]["text"] = "first part\n---\nsecond part"
        payload["diffs"][0]["lineComments"][0]["comments"][0]["text"] = "see\n  ---\n[1] | x | y"
        review = Review(changeset_from_payload(payload))

        edited = read_review(review.render())
        self.assertEqual(review.compare(edited), [])
        texts = {comment.id: comment.text for _diff, comment, _parent in edited.changeset.iter_comments()}
        self.assertEqual(texts[1235], "first part\n---\nsecond part")
        self.assertEqual(texts[1236], "see\n  ---\n[1] | x | y")

    def test_unchanged_overview_has_no_changes(self):
        overview = build_overview(
            decode_activities(
                {
                    "values": [
                        {"action": "APPROVED", "user": {"displayName": "Alice"}, "createdDate": 1400000000000},
                        {
                            "action": "COMMENTED",
                            "user": {"displayName": "Bob"},
                            "comment": {
                                "id": 90,
                                "text": "overall fine",
                                "author": {"displayName": "Bob"},
                                "updatedDate": 1400000100000,
                                "comments": [{"id": 91, "text": "agreed", "author": {"displayName": "Carol"}}],
                            },
                        },
                        {
                            "action": "COMMENTED",
                            "user": {"displayName": "Bob"},
                            "comment": {"id": 92, "text": "nice", "author": {"displayName": "Bob"}},
                            "commentAnchor": {"line": 12, "lineType": "ADDED", "path": "src/app.py"},
                            "diff": make_payload()["diffs"][0],
                        },
                        {"action": "OPENED", "user": {"displayName": "Bob"}},
                    ]
                }
            )
        )
        review = Review(overview, is_overview=True)
        review.add_usage_note()
        review.add_modeline("http://stash/projects/PRJ/repos/app/pull-requests/1")

        self.assertEqual(review.compare(read_review(review.render(), is_overview=True)), [])

    def test_trailing_spaces_are_not_a_modification(self):
        review = saved_review()
        edited = read_review(review.render().replace("# bla\n", "# bla   \n"))
        self.assertEqual(review.compare(edited), [])

    def test_removal_follows_other_changes(self):
        payload = make_payload()
        del payload["diffs"][0]["lineComments"][0]["comments"]
        review = Review(changeset_from_payload(payload))
        lines = review.render().splitlines()
        header = next(index for index, line in enumerate(lines) if line.startswith("# [1234] |"))
        del lines[header - 2 : header + 5]
        text = "\n".join(lines).replace("# bla\n", "# bla2\n") + "\n"

        changes = review.compare(read_review(text))
        self.assertEqual([type(change) for change in changes], [CommentModified, CommentRemoved])
        self.assertEqual(changes[1].payload(), {"id": 1234, "version": 0})

    def test_removing_thread_removes_replies(self):
        review = saved_review()
        lines = remove_block(review.render().splitlines(), 1234)
        text = "\n".join(lines).replace("# bla\n", "# bla2\n") + "\n"

        changes = review.compare(read_review(text))
        self.assertEqual([type(change) for change in changes], [CommentModified, CommentRemoved, CommentRemoved])
        self.assertEqual([change.comment.id for change in changes[1:]], [1234, 1236])
        self.assertEqual(changes[1].payload(), {"id": 1234, "version": 0})
        self.assertEqual(changes[2].payload(), {"id": 1236, "version": 2})

    def test_repeated_comment_id_is_ignored(self):
        ts = format_timestamp(1400000000000)
        block = f"# ---\n#\n# [5] | A | {ts}\n#\n# note\n#\n# ---\n"
        original = parse_changeset(SIMPLE_DIFF + block)
        edited = parse_changeset(
            "--- a.txt\n+++ a.txt\n@@ -1,1 +1,3 @@\n first\n" + block + "+second\n+third\n" + block
        )
        self.assertEqual(compare_changesets(original, edited), [])

    def test_review_level_comment_in_overview(self):
        original = Review(parse_changeset("### Approved by Alice\n"), is_overview=True)
        edited = read_review("### Approved by Alice\n\n###\n# ---\n# overall fine\n# ---\n", is_overview=True)

        [change] = original.compare(edited)
        self.assertIsInstance(change, ReviewCommentAdded)
        self.assertEqual(change.payload(), {"text": "overall fine"})

    def test_comment_outside_diff_is_file_comment(self):
        text = "--- a.txt\n+++ b.txt\n@@ -1,1 +1,1 @@\n x\n\n### note\n"
        original = Review(parse_changeset(text))
        edited = read_review(text + "\n###\n# about the file\n")

        [change] = original.compare(edited)
        self.assertIsInstance(change, FileCommentAdded)
        self.assertEqual(change.payload(), {"text": "about the file", "anchor": {"path": "b.txt", "srcPath": "a.txt"}})

    def test_file_comment_before_first_hunk(self):
        text = "--- a.txt\n+++ a.txt\n@@ -1,1 +1,1 @@\n x\n"
        original = Review(parse_changeset(text))
        edited = read_review("--- a.txt\n+++ a.txt\n# ---\n# whole file\n# ---\n@@ -1,1 +1,1 @@\n x\n")

        [change] = original.compare(edited)
        self.assertIsInstance(change, FileCommentAdded)
        self.assertIn("file a.txt", change.describe())


class TestReviewDocument(unittest.TestCase):
    def test_usage_note_comes_first(self):
        review = Review(parse_changeset(SIMPLE_DIFF))
        review.add_usage_note()
        self.assertTrue(review.render().startswith("### " + USAGE_TEXT.split("\n", 1)[0] + "\n"))

    def test_files_note_lists_names(self):
        review = Review(parse_changeset(SIMPLE_DIFF))
        review.add_files_note(["a.txt", "", "b.txt"])
        self.assertEqual(review.changeset.diffs[-1].note, "Files changed in this pull request:\n  a.txt\n  b.txt")

    def test_files_note_skipped_when_empty(self):
        review = Review(parse_changeset(SIMPLE_DIFF))
        review.add_files_note([])
        self.assertEqual(len(review.changeset.diffs), 1)

    def test_modeline_names_file(self):
        review = Review(parse_changeset(SIMPLE_DIFF))
        review.add_modeline("http://stash/pr/1")
        self.assertTrue(review.render().endswith(f"### ash: review-url=http://stash/pr/1 file=a.txt\n### {VIM_MODELINE}\n"))

    def test_modeline_in_overview(self):
        review = Review(parse_changeset("### Opened by Alice\n"), is_overview=True)
        self.assertEqual(review.file_tag(), "overview")

    def test_normalize_comment_text(self):
        self.assertEqual(normalize_comment_text("  a  \nb\t\n\n"), "a\nb")


if __name__ == "__main__":
    unittest.main()
