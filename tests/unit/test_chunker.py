"""Unit tests for ASIN chunking."""

from sqp_orchestrator.scheduling.chunker import MAX_ASIN_CHARS, split_asins_into_chunks


class TestSplitAsinsIntoChunks:

    def test_empty_input(self):
        assert split_asins_into_chunks([]) == []

    def test_single_chunk_when_under_limit(self):
        chunks = split_asins_into_chunks(["B000000001", "B000000002"])

        assert len(chunks) == 1
        assert chunks[0].asin_string == "B000000001 B000000002"

    def test_joined_length_never_exceeds_limit(self):
        asins = [f"B{i:09d}" for i in range(60)]

        chunks = split_asins_into_chunks(asins)

        assert all(len(chunk.asin_string) <= MAX_ASIN_CHARS for chunk in chunks)
        # 10-char ids plus separators: 18 per 200-char chunk
        assert [len(chunk.asins) for chunk in chunks] == [18, 18, 18, 6]

    def test_order_preserved_and_each_asin_once(self):
        asins = [f"B{i:09d}" for i in range(45)]

        chunks = split_asins_into_chunks(asins, max_chars=50)

        assert [asin for chunk in chunks for asin in chunk.asins] == asins

    def test_exact_fit(self):
        chunks = split_asins_into_chunks(["AAAA", "BBBB"], max_chars=9)

        assert len(chunks) == 1

    def test_strips_and_drops_blanks(self):
        chunks = split_asins_into_chunks([" B000000001 ", "", None, "   ", "B000000002"])

        assert chunks[0].asins == ["B000000001", "B000000002"]

    def test_oversized_identifier_is_its_own_chunk(self):
        chunks = split_asins_into_chunks(["SHORT", "X" * 30, "TAIL"], max_chars=20)

        assert [chunk.asins for chunk in chunks] == [["SHORT"], ["X" * 30], ["TAIL"]]
