"""Tests for the LanceDB knowledge store."""

import asyncio
import math

import pytest

from codex import (
    PROBE_TEXT,
    Codex,
    KnowledgeItem,
    VolumeState,
    metadata_column,
    translate_where,
)
from config import CodexConfig
from conftest import StaticEmbedding
from embeddings import HashEmbedding
from errors import ConfigurationError, DowncityError, ErrorId, ValidationError


class TestTranslateWhere:
    """Metadata filter -> LanceDB SQL predicate."""

    def test_no_constraint(self):
        assert translate_where(None) == ""
        assert translate_where({}) == ""

    def test_equality(self):
        assert translate_where({"type": "doc"}) == "`meta__type` = 'doc'"
        assert translate_where({"flag": True}) == "`meta__flag` = TRUE"
        assert translate_where({"year": 2020}) == "`meta__year` = 2020"

    def test_nested_keys_are_flattened(self):
        assert translate_where({"source": {"lang": "en"}}) == "`meta__source_dlang` = 'en'"

    def test_membership(self):
        assert translate_where({"tag": ["a", "b"]}) == "`meta__tag` IN ('a', 'b')"
        assert translate_where({"tag": ["a", None]}) == "(`meta__tag` IN ('a') OR `meta__tag` IS NULL)"

    def test_comparisons_are_anded(self):
        where = {"year": {"$gte": 2020, "$lt": 2024}, "type": "doc"}
        assert translate_where(where) == "`meta__year` >= 2020 AND `meta__year` < 2024 AND `meta__type` = 'doc'"

    def test_unknown_operator_is_equality(self):
        assert translate_where({"k": {"$eq": "v"}}) == "`meta__k` = 'v'"

    def test_null_checks(self):
        assert translate_where({"k": None}) == "`meta__k` IS NULL"
        assert translate_where({"k": {"$ne": None}}) == "`meta__k` IS NOT NULL"

    def test_quotes_are_escaped(self):
        assert translate_where({"name": "O'Brien"}) == "`meta__name` = 'O''Brien'"

    def test_missing_column_behaves_as_null(self):
        assert translate_where({"k": "v"}, columns={}) is None
        assert translate_where({"k": {"$gt": 1}}, columns={}) is None
        assert translate_where({"k": None}, columns={}) == ""
        assert translate_where({"k": "v", "j": None}, columns={"meta__k": "string"}) == "`meta__k` = 'v'"

    def test_bad_values(self):
        with pytest.raises(ValidationError):
            translate_where({"k": {"$gt": None}})
        with pytest.raises(ValidationError):
            translate_where({"k": {"$lt": [1]}})
        with pytest.raises(ValidationError):
            translate_where({"k": math.nan})

    def test_value_kind_must_match_column(self):
        columns = {"meta__year": "double", "meta__flag": "boolean"}
        assert translate_where({"year": 2020}, columns=columns) == "`meta__year` = 2020"
        with pytest.raises(ValidationError):
            translate_where({"year": "abc"}, columns=columns)
        with pytest.raises(ValidationError):
            translate_where({"year": {"$gt": "2020"}}, columns=columns)
        with pytest.raises(ValidationError):
            translate_where({"flag": [True, "yes"]}, columns=columns)

    def test_metadata_column(self):
        assert metadata_column("a.b.c") == "meta__a_db_dc"
        assert metadata_column("a__b") == "meta__a_u_ub"
        assert metadata_column("a_.b") != metadata_column("a._b")
        with pytest.raises(ValidationError):
            metadata_column("a`b")


class TestProvisioning:
    """Volume creation and the dimension lock."""

    async def test_dimension_is_probed(self, codex_config):
        model = StaticEmbedding({}, dimension=8)
        volume = await Codex(model, codex_config).collection("notes")
        assert volume.dimension == 8
        assert volume.state is VolumeState.READY
        assert model.calls == [PROBE_TEXT]

    async def test_configured_dimension_skips_probe(self, tmp_path):
        model = StaticEmbedding({}, dimension=8)
        volume = await Codex(model, CodexConfig(path=tmp_path / "db", dimension=8)).collection()
        assert volume.name == "default"
        assert model.calls == []

    async def test_dimension_lock(self, codex_config):
        first = await Codex(HashEmbedding(8), codex_config).collection("notes")
        assert first.dimension == 8

        with pytest.raises(ConfigurationError) as exc_info:
            await Codex(HashEmbedding(16), codex_config).collection("notes")
        assert exc_info.value.id == ErrorId.DIMENSION_MISMATCH

        reopened = await Codex(HashEmbedding(8), codex_config).collection("notes")
        assert await reopened.count() == 0

    async def test_collection_is_cached(self, codex):
        assert await codex.collection("a") is await codex.volume("a")

    async def test_cached_lookup_skips_the_lock(self, codex):
        volume = await codex.collection("a")
        async with codex._volume_lock:
            assert await asyncio.wait_for(codex.collection("a"), 1) is volume

    async def test_invalid_name(self, codex):
        with pytest.raises(ValidationError):
            await codex.collection("bad name!")

    async def test_list_has_drop(self, codex):
        await codex.collection("alpha")
        await codex.collection("beta")
        assert await codex.list() == ["alpha", "beta"]
        assert await codex.has("alpha")
        await codex.drop("alpha")
        assert not await codex.has("alpha")
        assert await codex.list() == ["beta"]

    async def test_close_reconnects(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("kept across reconnects")
        codex.close()
        reopened = await codex.collection("notes")
        assert reopened is not volume
        assert await reopened.count() == 1

    async def test_embedding_failure_is_wrapped(self, codex_config):
        class Broken:
            def embed(self, text):
                raise RuntimeError("service down")

        with pytest.raises(DowncityError) as exc_info:
            await Codex(Broken(), codex_config).collection("notes")
        assert exc_info.value.id == ErrorId.DIMENSION_DETECTION_FAILED

    def test_model_is_required(self):
        with pytest.raises(ValidationError):
            Codex(None)  # type: ignore[arg-type]


class TestInsert:
    async def test_insert_and_get(self, codex):
        volume = await codex.collection("notes")
        record_id = await volume.insert("lancedb stores vectors", {"source": {"kind": "doc", "page": 2}})
        entry = await volume.get(record_id)
        assert entry.content == "lancedb stores vectors"
        assert entry.metadata == {"source": {"kind": "doc", "page": 2}}
        assert await volume.get("missing") is None

    async def test_upsert_by_id(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("first version", id="fixed")
        await volume.insert("second version", id="fixed")
        assert await volume.count() == 1
        assert (await volume.get("fixed")).content == "second version"

    async def test_batch_returns_ids_in_order(self, codex):
        volume = await codex.collection("notes")
        ids = await volume.batch_insert(
            [KnowledgeItem("one", id="a"), {"content": "two"}, KnowledgeItem("three", {"n": 3})]
        )
        assert ids[0] == "a"
        assert len(ids) == 3
        assert len(set(ids)) == 3
        assert await volume.count() == 3

    async def test_batch_is_validated_before_writing(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(ValidationError) as exc_info:
            await volume.batch_insert([{"content": "fine"}, {"content": "   "}])
        assert exc_info.value.details == {"index": 1}
        assert await volume.count() == 0

    async def test_batch_rejects_duplicate_ids(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(ValidationError):
            await volume.batch_insert([KnowledgeItem("a", id="x"), KnowledgeItem("b", id="x")])

    async def test_empty_inputs(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(ValidationError):
            await volume.insert("")
        with pytest.raises(ValidationError):
            await volume.batch_insert([])

    async def test_metadata_type_conflict(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("typed", {"year": 2020})
        with pytest.raises(ValidationError) as exc_info:
            await volume.insert("retyped", {"year": "2020"})
        assert exc_info.value.id == ErrorId.METADATA_TYPE_CONFLICT
        with pytest.raises(ValidationError):
            await volume.batch_insert([{"content": "a", "metadata": {"k": 1}}, {"content": "b", "metadata": {"k": "x"}}])
        assert await volume.count() == 1

    async def test_metadata_columns_added_to_populated_table(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("plain")
        await volume.insert("typed", {"type": "doc", "year": 2020, "draft": False})
        await volume.insert("later", {"lang": "en"})
        assert await volume.count() == 3
        results = await volume.search("typed", limit=10, where={"type": "doc"})
        assert [r.content for r in results] == ["typed"]
        results = await volume.search("later", limit=10, where={"lang": "en", "draft": None})
        assert [r.content for r in results] == ["later"]

    async def test_nested_and_flat_keys_stay_apart(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("both", {"a__b": 1, "a": {"b": "x"}})
        await volume.insert("nested", {"a": {"b": "y"}})
        await volume.insert("flat", {"a__b": 2})

        async def contents(where):
            return sorted(r.content for r in await volume.search("q", limit=10, where=where))

        assert await contents({"a__b": 2}) == ["flat"]
        assert await contents({"a": {"b": "y"}}) == ["nested"]
        assert await contents({"a__b": {"$gte": 1}}) == ["both", "flat"]

    async def test_delete(self, codex):
        volume = await codex.collection("notes")
        record_id = await volume.insert("short lived")
        await volume.delete(record_id)
        await volume.delete("never-existed")
        assert await volume.count() == 0


class TestSearch:
    async def test_results_sorted_by_distance(self, tmp_path):
        model = StaticEmbedding(
            {
                "query": [1.0, 0.0],
                "close": [0.9, math.sqrt(1 - 0.81)],
                "middle": [0.6, 0.8],
                "far": [0.1, math.sqrt(1 - 0.01)],
            },
            dimension=2,
        )
        volume = await Codex(model, CodexConfig(path=tmp_path / "db", dimension=2)).collection("notes")
        await volume.batch_insert([{"content": "far"}, {"content": "close"}, {"content": "middle"}])

        results = await volume.search("query", limit=10)
        assert [r.content for r in results] == ["close", "middle", "far"]
        assert [r.distance for r in results] == pytest.approx([0.1, 0.4, 0.9], abs=1e-3)

        within = await volume.search("query", limit=10, distance_threshold=0.5)
        assert [r.content for r in within] == ["close", "middle"]

    async def test_where_filters(self, codex):
        volume = await codex.collection("notes")
        await volume.batch_insert(
            [
                {"content": "guide 2019", "metadata": {"type": "doc", "year": 2019, "source": {"lang": "en"}}},
                {"content": "guide 2022", "metadata": {"type": "doc", "year": 2022, "source": {"lang": "de"}}},
                {"content": "chat log", "metadata": {"type": "chat", "year": 2022}},
            ]
        )

        async def contents(where):
            return sorted(r.content for r in await volume.search("guide", limit=10, where=where))

        assert await contents({"type": "doc"}) == ["guide 2019", "guide 2022"]
        assert await contents({"year": {"$gte": 2020}}) == ["chat log", "guide 2022"]
        assert await contents({"source": {"lang": "en"}}) == ["guide 2019"]
        assert await contents({"type": ["chat", "memo"]}) == ["chat log"]
        assert await contents({"source": {"lang": None}}) == ["chat log"]
        assert await contents({"type": "doc", "year": {"$lt": 2020}}) == ["guide 2019"]
        assert await contents({"unknown": "x"}) == []
        assert len(await contents({"unknown": None})) == 3

    async def test_filter_value_of_wrong_kind(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("dated", {"year": 2020})
        with pytest.raises(ValidationError):
            await volume.search("dated", where={"year": "abc"})
        with pytest.raises(ValidationError):
            await volume.search("dated", where={"year": {"$lt": "2021"}})

    async def test_results_are_unflattened(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("nested", {"a": {"b": {"c": 1}}, "tags": ["x", "y"]})
        [result] = await volume.search("nested")
        assert result.metadata == {"a": {"b": {"c": 1}}, "tags": ["x", "y"]}
        assert result.distance == pytest.approx(0.0, abs=1e-5)

    async def test_search_by_type(self, codex):
        volume = await codex.collection("notes")
        await volume.insert("a doc", {"type": "doc"})
        await volume.insert("a note", {"type": "note"})
        results = await volume.search_by_type("anything", "note")
        assert [r.content for r in results] == ["a note"]

    async def test_invalid_arguments(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(ValidationError):
            await volume.search("  ")
        with pytest.raises(ValidationError):
            await volume.search("q", limit=0)
        with pytest.raises(ValidationError):
            await volume.search("q", limit=101)

    async def test_empty_volume(self, codex):
        volume = await codex.collection("notes")
        assert await volume.search("anything") == []


class TestIndexes:
    async def test_list_indexes_empty(self, codex):
        volume = await codex.collection("notes")
        assert await volume.list_indexes() == []

    async def test_drop_unknown_index_is_wrapped(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(DowncityError) as exc_info:
            await volume.drop_index("no_such_index")
        assert exc_info.value.id == ErrorId.INDEX_DELETE_FAILED

    async def test_create_stats_and_drop(self, codex):
        volume = await codex.collection("notes")
        await volume.batch_insert([{"content": f"row {i}"} for i in range(300)])
        await volume.create_index(index_type="IVF_FLAT", num_partitions=4)

        [index] = await volume.list_indexes()
        assert index["columns"] == ["vector"]
        stats = await volume.index_stats(index["name"])
        assert stats.count == 300
        assert stats.unindexed == 0
        assert stats.dimension == 16

        await volume.drop_index(index["name"])
        assert await volume.list_indexes() == []

    async def test_create_index_failure_is_wrapped(self, codex):
        volume = await codex.collection("notes")
        with pytest.raises(DowncityError) as exc_info:
            await volume.create_index(index_type="NOT_AN_INDEX")
        assert exc_info.value.id == ErrorId.INDEX_CREATE_FAILED
