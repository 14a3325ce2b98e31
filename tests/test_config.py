from pathlib import Path

import pytest

from tbnanopipe.annotation import DatabaseCategory
from tbnanopipe.config import ConfigError, load_config, load_samples


def test_load_toy_config(toy: dict) -> None:
    cfg = load_config(toy["config"])
    base = Path(toy["config"]).parent.resolve()

    assert cfg.outdir == base / "results"
    assert cfg.jobs == 2
    assert cfg.resume is True
    assert cfg.resources.reference == base / "reference.fa"
    assert set(cfg.resources.databases) == set(DatabaseCategory)
    assert cfg.resources.databases[DatabaseCategory.WHO] == base / "databases" / "who.vcf.gz"
    assert cfg.resources.clair3_model == str(base / "clair3_model")
    assert [s.sample_id for s in cfg.samples] == ["toy", "empty"]
    assert cfg.samples[0].bam == base / "toy.bam"
    assert cfg.samples[0].reads == ()


def test_bundled_model_name_is_kept(tmp_path: Path) -> None:
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("resources:\n  clair3_model: r941_prom_sup_g5014\n", encoding="utf-8")
    assert load_config(cfg_path).resources.clair3_model == "r941_prom_sup_g5014"


def test_samples_from_tsv(tmp_path: Path) -> None:
    sheet = tmp_path / "samples.tsv"
    sheet.write_text("sample_id\treads\tbam\nA\ta_1.fq.gz,a_2.fq.gz\t\nB\t\tb.bam\n", encoding="utf-8")
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("samples: samples.tsv\n", encoding="utf-8")

    cfg = load_config(cfg_path)
    a, b = cfg.samples
    assert a.reads == (tmp_path.resolve() / "a_1.fq.gz", tmp_path.resolve() / "a_2.fq.gz")
    assert a.bam is None
    assert b.bam == tmp_path.resolve() / "b.bam"
    assert [s.sample_id for s in load_samples(sheet)] == ["A", "B"]


def test_duplicate_sample_ids_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("samples:\n  - {id: A, bam: a.bam}\n  - {id: A, bam: b.bam}\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="Duplicate"):
        load_config(cfg_path)


def test_sample_needs_input(tmp_path: Path) -> None:
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("samples:\n  - {id: A}\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(cfg_path)


def test_unknown_tool_key_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("tools:\n  bwa: /usr/bin/bwa\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="bwa"):
        load_config(cfg_path)


def test_unknown_database_rejected(tmp_path: Path) -> None:
    cfg_path = tmp_path / "c.yaml"
    cfg_path.write_text("resources:\n  databases:\n    plasmids: p.vcf.gz\n", encoding="utf-8")
    with pytest.raises(ValueError, match="plasmids"):
        load_config(cfg_path)
