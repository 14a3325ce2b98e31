import csv
from pathlib import Path

import pytest

from tbnanopipe.annotation import DatabaseCategory
from tbnanopipe.canonical import FINAL_TABLE_COLUMNS, canonical_filter, merge_final_sets, write_final_table
from tbnanopipe.models import FieldDecl, VariantRecord, VariantSet, VcfSchema


def _set(category: str, origins, extra: dict) -> VariantSet:
    schema = VcfSchema(contigs={"c": 1000})
    schema.info["ORIGIN"] = FieldDecl("ORIGIN", "1", "String", "Origin")
    schema.info["SOURCE_DB"] = FieldDecl("SOURCE_DB", "1", "String", "Source")
    for key in extra:
        schema.info[key] = FieldDecl(key, ".", "String", key)
    records = []
    for i, origin in enumerate(origins):
        info = dict(extra)
        if origin is not None:
            info.update(ORIGIN=origin, SOURCE_DB=category)
        records.append(VariantRecord("c", 10 * (i + 1), "A", ("G",), qual=50.0, info=info))
    return VariantSet(schema=schema, records=tuple(records))


def test_canonical_filter_keeps_only_marker() -> None:
    vs = _set("WHO", ["canonical", "inferred", None, "canonical"], {})
    assert [r.pos for r in canonical_filter(vs)] == [10, 40]


def test_canonical_filter_may_be_empty() -> None:
    assert len(canonical_filter(_set("WHO", ["inferred", None], {}))) == 0


def test_merge_counts_add_up() -> None:
    finals = {
        DatabaseCategory.ANTIBIOTICS: canonical_filter(_set("ANTIBIOTICS", ["inferred"], {"DRUG": "INH"})),
        DatabaseCategory.WHO: canonical_filter(_set("WHO", ["canonical", "canonical"], {"WHO_GRADE": "1"})),
        DatabaseCategory.LINEAGES: canonical_filter(_set("LINEAGES", ["canonical"], {"LINEAGE": "4"})),
    }
    combined = merge_final_sets(finals)

    assert len(combined) == sum(len(vs) for vs in finals.values()) == 3
    assert [r.info["SOURCE_DB"] for r in combined] == ["WHO", "WHO", "LINEAGES"]
    for key in ("DRUG", "WHO_GRADE", "LINEAGE"):
        assert key in combined.schema.info


def test_same_variant_in_two_databases_is_kept_twice() -> None:
    finals = {
        DatabaseCategory.WHO: _set("WHO", ["canonical"], {}),
        DatabaseCategory.LINEAGES: _set("LINEAGES", ["canonical"], {}),
    }
    combined = merge_final_sets(finals)
    assert combined.keys()[0] == combined.keys()[1]
    assert len(combined) == 2


def test_merge_requires_input() -> None:
    with pytest.raises(ValueError):
        merge_final_sets({})


def test_final_table(tmp_path: Path) -> None:
    vs = _set("WHO", ["canonical"], {"WHO_GRADE": "1", "GENE": "rpoB"})
    path = write_final_table(vs, "S1", tmp_path / "final.tsv")

    with open(path, newline="", encoding="utf-8") as fh:
        rows = list(csv.DictReader(fh, delimiter="\t"))
    assert list(rows[0]) == list(FINAL_TABLE_COLUMNS)
    assert rows[0]["sample"] == "S1"
    assert rows[0]["source_db"] == "WHO"
    assert rows[0]["gene"] == "rpoB"
    assert rows[0]["qual"] == "50"
    assert rows[0]["annotation"] == "WHO_GRADE=1"
