"""
Post-processing of per-sample and merged profiling tables.

MetaPhlAn, Bracken and HUMAnN write their own tables; the helpers here
derive the count tables and fix up the headers of merged tables after the
scheduled merge jobs have run.
"""

import io
import logging
from pathlib import Path
from typing import List, Tuple, Union

import pandas as pd

from microslurm.validation import MicroslurmError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class TableError(MicroslurmError):
    """A profiling table is missing data needed to post-process it."""


METAPHLAN_COLUMNS = ["clade_name", "NCBI_tax_id", "relative_abundance", "additional_species"]


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:f}"


def read_nreads(bowtie2out: PathLike) -> int:
    """Read the ``#nreads`` line MetaPhlAn appends to its bowtie2 output."""
    with open(bowtie2out) as handle:
        for line in handle:
            if line.startswith("#nreads"):
                return int(line.split()[1])
    raise TableError(f"No #nreads line found in {bowtie2out}")


def split_comment_header(path: PathLike) -> Tuple[List[str], str]:
    """Split a MetaPhlAn profile into its leading '#' lines and the data block."""
    comments: List[str] = []
    data: List[str] = []
    with open(path) as handle:
        for line in handle:
            (comments if line.startswith("#") else data).append(line.rstrip("\n"))
    return comments, "\n".join(data)


def _read_profile(data: str) -> pd.DataFrame:
    if not data.strip():
        return pd.DataFrame(columns=METAPHLAN_COLUMNS)
    df = pd.read_csv(io.StringIO(data), sep="\t", header=None, dtype=str, keep_default_na=False)
    df = df.reindex(columns=range(len(METAPHLAN_COLUMNS)), fill_value="")
    df.columns = METAPHLAN_COLUMNS
    return df


def metaphlan_counts_table(bugs_list: PathLike, bowtie2out: PathLike, output: PathLike) -> Path:
    """
    Add an estimated read count column to a MetaPhlAn profile.

    counts = relative_abundance / 100 * nreads, inserted after the
    relative abundance column. Comment lines are kept; the column header
    gains the new column name.
    """
    nreads = read_nreads(bowtie2out)
    comments, data = split_comment_header(bugs_list)
    df = _read_profile(data)

    abundance = pd.to_numeric(df["relative_abundance"], errors="coerce").fillna(0.0)
    df.insert(3, "counts", [_format_number(v) for v in abundance / 100 * nreads])

    header = "#" + "\t".join(df.columns)
    comments = [header if c.startswith("#clade_name") else c for c in comments]
    if header not in comments:
        comments.append(header)

    output = Path(output)
    with open(output, "w") as handle:
        for line in comments:
            handle.write(line + "\n")
        df.to_csv(handle, sep="\t", header=False, index=False)
    logger.debug(f"Wrote counts table {output} (nreads={nreads})")
    return output


def split_counts_table(counts_table: PathLike, out_dir: PathLike, key: str) -> Tuple[Path, Path]:
    """
    Derive the two per-sample tables merged across samples.

    Writes ``<key>_metaphlan_rel_ab_w_unknown.tsv`` (clade, taxid, relative
    abundance) and ``<key>_metaphlan_counts.tsv`` (clade, taxid, counts,
    labelled relative_abundance so the merge tool accepts it).
    """
    comments, data = split_comment_header(counts_table)
    columns = METAPHLAN_COLUMNS[:3] + ["counts"] + METAPHLAN_COLUMNS[3:]
    if data.strip():
        df = pd.read_csv(io.StringIO(data), sep="\t", header=None, dtype=str, keep_default_na=False)
        df = df.reindex(columns=range(len(columns)), fill_value="")
        df.columns = columns
    else:
        df = pd.DataFrame(columns=columns)

    out_dir = Path(out_dir)
    outputs = []
    for name, value_column in (("rel_ab_w_unknown", "relative_abundance"), ("counts", "counts")):
        path = out_dir / f"{key}_metaphlan_{name}.tsv"
        table = df[["clade_name", "NCBI_tax_id", value_column]]
        with open(path, "w") as handle:
            for line in comments:
                if line.startswith("#clade_name"):
                    line = "#clade_name\tNCBI_tax_id\trelative_abundance"
                handle.write(line + "\n")
            table.to_csv(handle, sep="\t", header=False, index=False)
        outputs.append(path)
    return outputs[0], outputs[1]


def strip_header_suffix(path: PathLike, suffix: str, line_number: int = 2) -> None:
    """Remove ``suffix`` from every sample column name on one header line."""
    path = Path(path)
    lines = path.read_text().splitlines(keepends=True)
    if len(lines) >= line_number:
        lines[line_number - 1] = lines[line_number - 1].replace(suffix, "")
        path.write_text("".join(lines))


def prepend_mpa_header(path: PathLike, key: str) -> None:
    """Give a per-sample kreport2mpa table the header combine_mpa expects."""
    path = Path(path)
    path.write_text(f"#clade_name\t{key}\n" + path.read_text())


def fix_combined_mpa_header(path: PathLike, database_name: str) -> None:
    """Rename the combined table's first column and record the database used."""
    path = Path(path)
    lines = path.read_text().splitlines(keepends=True)
    if lines:
        lines[0] = lines[0].replace("#Classification", "clade_name", 1)
    path.write_text(f"#{database_name}\n" + "".join(lines))
