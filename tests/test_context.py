"""
Tests for smaccess.core.context: k-mers, motifs and reference lookup.
"""
import pytest
import pysam

from smaccess.core.context import Motif, ReferenceContext, all_kmers, reverse_complement
from smaccess.core.errors import MotifError


class TestKmers:
    def test_reverse_complement(self):
        assert reverse_complement('ACGTAC') == 'GTACGT'
        assert reverse_complement('AAAA') == 'TTTT'
        assert reverse_complement('') == ''

    def test_all_sixmers(self):
        kmers = all_kmers(6)
        assert len(kmers) == 4096
        assert kmers[0] == 'AAAAAA'
        assert kmers[-1] == 'TTTTTT'
        assert kmers == sorted(kmers)
        assert len(set(kmers)) == 4096


class TestMotif:
    def test_parse(self):
        motif = Motif.parse('2:GC')
        assert motif.motif == 'GC'
        assert motif.position == 2
        assert motif.position_0b == 1
        assert str(motif) == '2:GC'

    def test_matches_prefix(self):
        motif = Motif.parse('1:GATC')
        assert motif.matches('GATCAA')
        assert not motif.matches('AGATCA')

    @pytest.mark.parametrize('text', [
        'GC',        # no position
        '1:GC:3',    # extra part
        'x:GC',      # non-integer position
        '-1:GC',     # negative position
        '1:GXC',     # invalid base
        '1:gc',      # lowercase
        '0:GC',      # position is one-based
        '3:GC',      # position past motif end
        '1:',        # empty motif
    ])
    def test_invalid(self, text):
        with pytest.raises(MotifError):
            Motif.parse(text)

    def test_motif_error_is_value_error(self):
        with pytest.raises(ValueError):
            Motif.parse('bad')


class TestReferenceContextInMemory:
    def test_start_anchor(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences, kmer_size=6)
        assert ref.context_at('chr1', 0, '+') == 'ACGTAC'
        assert ref.context_at('chr1', 34, '+') == 'GTACGT'

    def test_minus_strand_is_reverse_complement(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences, kmer_size=6)
        assert ref.context_at('chr1', 0, '-') == 'GTACGT'

    def test_center_anchor(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences, kmer_size=5, anchor='center')
        assert ref.window(2) == (0, 5)
        assert ref.context_at('chr1', 2, '+') == 'ACGTA'
        assert ref.context_at('chr1', 1, '+') is None

    def test_out_of_bounds(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences, kmer_size=6)
        assert ref.context_at('chr1', 35, '+') is None
        assert ref.context_at('chr1', -1, '+') is None

    def test_unknown_contig(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences)
        assert ref.context_at('chrZ', 0) is None

    def test_ambiguous_bases(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences, kmer_size=6)
        assert ref.context_at('chr2', 14, '+') is None
        assert ref.context_at('chr2', 20, '+') == 'ACGTAC'

    def test_contig_lengths(self, reference_sequences):
        ref = ReferenceContext.from_sequences(reference_sequences)
        assert ref.contig_lengths == {'chr1': 40, 'chr2': 28}

    def test_even_k_with_center_anchor_rejected(self, reference_sequences):
        with pytest.raises(ValueError):
            ReferenceContext.from_sequences(reference_sequences, kmer_size=6, anchor='center')

    def test_requires_exactly_one_source(self, reference_sequences):
        with pytest.raises(ValueError):
            ReferenceContext()
        with pytest.raises(ValueError):
            ReferenceContext(fasta_path='x.fa', sequences=reference_sequences)


class TestReferenceContextFasta:
    @pytest.fixture
    def fasta_path(self, tmp_path, reference_sequences):
        path = str(tmp_path / 'ref.fa')
        with open(path, 'w') as f:
            for name, seq in reference_sequences.items():
                f.write(f">{name}\n{seq}\n")
        pysam.faidx(path)
        return path

    def test_lookup_matches_in_memory(self, fasta_path, reference_sequences):
        in_memory = ReferenceContext.from_sequences(reference_sequences, kmer_size=6)
        with ReferenceContext(fasta_path, kmer_size=6) as fasta:
            for contig, seq in reference_sequences.items():
                for pos in range(len(seq)):
                    for strand in ('+', '-'):
                        assert fasta.context_at(contig, pos, strand) == \
                            in_memory.context_at(contig, pos, strand)

    def test_contig_lengths(self, fasta_path):
        with ReferenceContext(fasta_path) as fasta:
            assert fasta.contig_lengths == {'chr1': 40, 'chr2': 28}
