"""Tests for turning segmentation output into four panel descriptions."""

import pytest

from stripforge.jobs.segmentation import (
    consolidate_segments,
    expand_segments,
    parse_segmentation_output,
)


class TestParseSegmentationOutput:
    def test_four_strings_pass_through(self):
        scenes = ["One.", "Two.", "Three.", "Four."]
        assert parse_segmentation_output(scenes) == scenes

    def test_token_stream_is_joined(self):
        tokens = ["1", ". The", " hero", " wakes", ".\n", "2. A", " robot", " attacks", ".\n",
                  "3. They", " fight", ".\n", "4. Peace", " returns", "."]
        assert parse_segmentation_output(tokens) == [
            "The hero wakes.",
            "A robot attacks.",
            "They fight.",
            "Peace returns.",
        ]

    def test_numbered_text_with_panel_prefix(self):
        text = "Panel 1: Dawn.\nPanel 2: Noon.\nPanel 3: Dusk.\nPanel 4: Night."
        assert parse_segmentation_output(text) == ["Dawn.", "Noon.", "Dusk.", "Night."]

    def test_single_paragraph_is_split_by_sentences(self):
        text = "The hero wakes. A robot attacks. They fight. Peace returns."
        assert parse_segmentation_output(text) == [
            "The hero wakes.",
            "A robot attacks.",
            "They fight.",
            "Peace returns.",
        ]

    def test_dict_payload(self):
        payload = {"segments": ["a b", "c d", "e f", "g h"]}
        assert parse_segmentation_output(payload) == ["a b", "c d", "e f", "g h"]

    @pytest.mark.parametrize("output", [None, 42, [], "", "   ", {"other": 1}, [1, 2, 3, 4]])
    def test_unusable_output_raises(self, output):
        with pytest.raises(ValueError):
            parse_segmentation_output(output)


class TestNormalization:
    def test_expand_splits_longest_segment(self):
        segments = ["Short.", "First long part. Second long part. Third long part."]
        result = expand_segments(segments, 4)
        assert len(result) == 4
        assert result[0] == "Short."

    def test_expand_duplicates_unsplittable_segment(self):
        assert expand_segments(["Only one"], 4) == ["Only one"] * 4

    def test_consolidate_merges_shortest_pair(self):
        segments = ["A long first segment", "b", "c", "A long fourth segment", "A long fifth segment"]
        assert consolidate_segments(segments, 4) == [
            "A long first segment",
            "b c",
            "A long fourth segment",
            "A long fifth segment",
        ]
