"""
Sequence context lookup.

Provides:
1. k-mer helpers (reverse complement, full k-mer enumeration)
2. Motif filters written as ``<1-based position>:<motif>`` (e.g. ``2:GC``)
3. ReferenceContext: k-mer under a reference position, from an indexed FASTA
   (pysam.FastaFile) or from in-memory sequences
"""

from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import pysam

from smaccess.core.errors import MotifError


_COMPLEMENT = str.maketrans('ACGTNacgtn', 'TGCANtgcan')
VALID_BASES = frozenset('ACGT')


def reverse_complement(seq: str) -> str:
    return seq.translate(_COMPLEMENT)[::-1]


def kmer_window(position: int, kmer_size: int, anchor: str = 'start'):
    """Half-open reference window [start, end) of the k-mer at position."""
    if anchor == 'start':
        return position, position + kmer_size
    half = kmer_size // 2
    return position - half, position + half + 1


def all_kmers(k: int) -> List[str]:
    """All 4^k k-mers over ACGT, in sorted order."""
    kmers = ['']
    for _ in range(k):
        kmers = [s + b for s in kmers for b in 'ACGT']
    return kmers


@dataclass(frozen=True)
class Motif:
    """A sequence motif with the 1-based position of the base of interest."""
    motif: str
    position: int

    @classmethod
    def parse(cls, text: str) -> 'Motif':
        parts = text.split(':')
        if len(parts) < 2:
            raise MotifError("Invalid format, should be in the form [pos]:[motif]")
        if len(parts) > 2:
            raise MotifError("Additional parts not expected. Invalid format")
        pos_text, motif = parts
        if not pos_text.isdigit():
            raise MotifError("Position must be positive integer")
        position = int(pos_text)
        if not motif or not set(motif) <= VALID_BASES:
            raise MotifError("Invalid base, should only be ACGT, uppercase only")
        if position == 0:
            raise MotifError("Position is one-based.")
        if position > len(motif):
            raise MotifError("Position should be less than the length of the motif given.")
        return cls(motif=motif, position=position)

    @property
    def position_0b(self) -> int:
        return self.position - 1

    def matches(self, context: str) -> bool:
        return context.startswith(self.motif)

    def __str__(self) -> str:
        return f"{self.position}:{self.motif}"


class ReferenceContext:
    """
    Looks up the k-mer under a reference position.

    With anchor 'start' the k-mer begins at the position (nanopolish
    eventalign convention); with anchor 'center' the position is the middle
    base of an odd-length k-mer. Minus-strand lookups return the reverse
    complement of the same reference window.

    Lookups return None (never raise) when the window leaves the contig, the
    contig is unknown, or the window contains non-ACGT bases.
    """

    def __init__(self, fasta_path: Optional[str] = None,
                 sequences: Optional[Mapping[str, str]] = None,
                 kmer_size: int = 6, anchor: str = 'start'):
        if (fasta_path is None) == (sequences is None):
            raise ValueError("Provide exactly one of fasta_path or sequences")
        if anchor not in ('start', 'center'):
            raise ValueError(f"Unknown anchor: {anchor}")
        if anchor == 'center' and kmer_size % 2 == 0:
            raise ValueError("kmer_size must be odd for a centred anchor")

        self.kmer_size = kmer_size
        self.anchor = anchor
        self._fasta = None
        self._sequences: Dict[str, str] = {}
        if fasta_path is not None:
            self._fasta = pysam.FastaFile(fasta_path)
            self._lengths = dict(zip(self._fasta.references, self._fasta.lengths))
        else:
            self._sequences = {name: seq.upper() for name, seq in sequences.items()}
            self._lengths = {name: len(seq) for name, seq in self._sequences.items()}

    @classmethod
    def from_sequences(cls, sequences: Mapping[str, str], kmer_size: int = 6,
                       anchor: str = 'start') -> 'ReferenceContext':
        return cls(sequences=sequences, kmer_size=kmer_size, anchor=anchor)

    @property
    def contig_lengths(self) -> Dict[str, int]:
        return dict(self._lengths)

    def window(self, position: int):
        return kmer_window(position, self.kmer_size, self.anchor)

    def context_at(self, contig: str, position: int, strand: str = '+') -> Optional[str]:
        length = self._lengths.get(contig)
        if length is None:
            return None
        start, end = self.window(position)
        if start < 0 or end > length:
            return None

        if self._fasta is not None:
            kmer = self._fasta.fetch(contig, start, end).upper()
        else:
            kmer = self._sequences[contig][start:end]

        if len(kmer) != self.kmer_size or not set(kmer) <= VALID_BASES:
            return None
        if strand == '-':
            kmer = reverse_complement(kmer)
        return kmer

    def close(self):
        if self._fasta is not None:
            self._fasta.close()
            self._fasta = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
