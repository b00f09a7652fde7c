"""
End-to-end tests for the smaccess-train and smaccess-apply entry points.
"""
import json
import os

import numpy as np
import pandas as pd
import pytest

from smaccess.cli import apply as apply_cli
from smaccess.cli import train as train_cli
from smaccess.core.model_io import load_reference_models


def _control_table(path, prefix, mean, rng):
    rows = []
    for i in range(20):
        for j in range(20):
            rows.append({
                'read_id': f'{prefix}{i}',
                'contig': 'chr1',
                'position': j,
                'signal': rng.normal(mean, 3.0),
                'context': 'AAAAAA' if j % 2 == 0 else 'CCCCCC',
            })
    pd.DataFrame(rows).to_csv(path, sep='\t', index=False)
    return str(path)


@pytest.fixture
def controls(tmp_path):
    rng = np.random.default_rng(21)
    pos = _control_table(tmp_path / 'open.tsv', 'p', 105.0, rng)
    neg = _control_table(tmp_path / 'closed.tsv', 'n', 85.0, rng)
    return pos, neg


@pytest.fixture
def trained(controls, tmp_path):
    outdir = str(tmp_path / 'models')
    rc = train_cli.main(['--positive', controls[0], '--negative', controls[1], '-o', outdir,
                         '--min-samples', '10', '--rank-samples', '500'])
    assert rc == 0
    return outdir


@pytest.fixture
def sample_table(tmp_path):
    # First half open, second half closed
    rows = [{'read_id': 's1', 'contig': 'chr1', 'position': j,
             'signal': 105.0 if j < 10 else 85.0,
             'context': 'AAAAAA' if j % 2 == 0 else 'CCCCCC'}
            for j in range(20)]
    rows.append({'read_id': 's2', 'contig': 'chr1', 'position': 3,
                 'signal': 100.0, 'context': 'TTTTTT'})
    path = tmp_path / 'sample.tsv'
    pd.DataFrame(rows).to_csv(path, sep='\t', index=False)
    return str(path)


class TestTrain:
    def test_outputs_written(self, trained):
        for name in ('positive.model.json', 'negative.model.json', 'context_ranks.tsv',
                     'training_summary.txt', 'run_config.json'):
            assert os.path.exists(os.path.join(trained, name)), name

    def test_models_fit_controls(self, trained):
        models = load_reference_models(os.path.join(trained, 'positive.model.json'),
                                       os.path.join(trained, 'negative.model.json'))
        assert sorted(models.positive) == ['AAAAAA', 'CCCCCC']
        assert abs(float(np.dot(models.positive['AAAAAA'].weights,
                                models.positive['AAAAAA'].means)) - 105.0) < 1.0
        assert abs(float(np.dot(models.negative['CCCCCC'].weights,
                                models.negative['CCCCCC'].means)) - 85.0) < 1.0

    def test_ranks_and_config(self, trained):
        ranks = pd.read_csv(os.path.join(trained, 'context_ranks.tsv'), sep='\t')
        assert sorted(ranks['context']) == ['AAAAAA', 'CCCCCC']
        with open(os.path.join(trained, 'run_config.json')) as f:
            assert json.load(f)['min_samples'] == 10

    def test_summary_has_both_labels(self, trained):
        with open(os.path.join(trained, 'training_summary.txt')) as f:
            text = f.read()
        assert 'positive' in text and 'negative' in text

    def test_invalid_option(self, controls, tmp_path):
        rc = train_cli.main(['--positive', controls[0], '--negative', controls[1],
                             '-o', str(tmp_path / 'x'), '--n-components', '0'])
        assert rc == 2

    def test_too_little_data(self, controls, tmp_path):
        rc = train_cli.main(['--positive', controls[0], '--negative', controls[1],
                             '-o', str(tmp_path / 'x'), '--min-samples', '1000',
                             '--max-samples-per-context', '1000'])
        assert rc == 1


class TestApply:
    def _args(self, trained, sample_table, outdir, *extra):
        return ['-i', sample_table,
                '--pos-model', os.path.join(trained, 'positive.model.json'),
                '--neg-model', os.path.join(trained, 'negative.model.json'),
                '-o', outdir, *extra]

    def test_segments_and_scores(self, trained, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        assert apply_cli.main(self._args(trained, sample_table, outdir)) == 0

        bed = pd.read_csv(os.path.join(outdir, 'sample.segments.bed'), sep='\t', header=None)
        assert bed[[0, 1, 2, 3, 6]].values.tolist() == [
            ['chr1', 0, 10, 's1', 'accessible'],
            ['chr1', 10, 20, 's1', 'inaccessible'],
        ]
        assert bed[8].tolist() == [10, 10]

        scores = pd.read_csv(os.path.join(outdir, 'sample.scores.tsv'), sep='\t')
        assert len(scores) == 21
        unscored = scores[scores['read_id'] == 's2']
        assert unscored['llr'].isna().all()
        assert unscored['unscored_reason'].tolist() == ['no_models']

        with open(os.path.join(outdir, 'sample.summary.txt')) as f:
            assert 'Reads processed:' in f.read()

    def test_custom_name(self, trained, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        assert apply_cli.main(self._args(trained, sample_table, outdir, '--name', 'run1')) == 0
        assert os.path.exists(os.path.join(outdir, 'run1.segments.bed'))

    def test_invalid_config_aborts(self, trained, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        rc = apply_cli.main(self._args(trained, sample_table, outdir, '--smoothing-window', '2'))
        assert rc == 2
        assert not os.path.exists(outdir)

    def test_missing_model_aborts(self, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        rc = apply_cli.main(['-i', sample_table, '--pos-model', str(tmp_path / 'none.json'),
                             '--neg-model', str(tmp_path / 'none.json'), '-o', outdir])
        assert rc == 2
        assert not os.path.exists(outdir)

    def test_missing_columns(self, trained, tmp_path):
        bad = tmp_path / 'bad.tsv'
        bad.write_text('read_id\tcontig\n')
        rc = apply_cli.main(self._args(trained, str(bad), str(tmp_path / 'out')))
        assert rc == 1

    def test_region_limits_positions(self, trained, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        rc = apply_cli.main(self._args(trained, sample_table, outdir,
                                       '--chrom', 'chr1', '--start', '0', '--stop', '9'))
        assert rc == 0

        bed = pd.read_csv(os.path.join(outdir, 'sample.segments.bed'), sep='\t', header=None)
        assert bed[[0, 1, 2, 3, 6]].values.tolist() == [['chr1', 0, 10, 's1', 'accessible']]
        scores = pd.read_csv(os.path.join(outdir, 'sample.scores.tsv'), sep='\t')
        assert scores['position'].max() <= 9
        with open(os.path.join(outdir, 'sample.summary.txt')) as f:
            assert 'Region filtered positions:  10' in f.read()

    def test_region_without_chrom_aborts(self, trained, sample_table, tmp_path):
        outdir = str(tmp_path / 'out')
        rc = apply_cli.main(self._args(trained, sample_table, outdir, '--start', '5'))
        assert rc == 2
        assert not os.path.exists(outdir)

    def test_epilog_names_range_guarantee(self):
        epilog = apply_cli.build_parser().epilog
        assert '--unscored-breaks-runs' in epilog
        assert 'inside a segment range' in epilog


def test_train_region_applies_to_aggregated_input(tmp_path):
    rng = np.random.default_rng(5)
    paths = []
    for name, mean in (('open', 105.0), ('closed', 85.0)):
        rows = [{'read_id': f'{name}{i}', 'contig': 'chr1', 'position': j,
                 'context': 'AAAAAA' if j < 10 else 'CCCCCC', 'value': rng.normal(mean, 3.0)}
                for i in range(30) for j in range(20)]
        path = tmp_path / f'{name}.tsv'
        pd.DataFrame(rows).to_csv(path, sep='\t', index=False)
        paths.append(str(path))

    outdir = str(tmp_path / 'models')
    rc = train_cli.main(['--positive', paths[0], '--negative', paths[1], '-o', outdir,
                         '--input-type', 'aggregated', '--min-samples', '10',
                         '--rank-samples', '200', '--chrom', 'chr1', '--stop', '9'])
    assert rc == 0
    models = load_reference_models(os.path.join(outdir, 'positive.model.json'),
                                   os.path.join(outdir, 'negative.model.json'))
    assert sorted(models.positive) == ['AAAAAA']
    with open(os.path.join(outdir, 'run_config.json')) as f:
        saved = json.load(f)
    assert (saved['region_contig'], saved['region_start'], saved['region_stop']) == ('chr1', None, 9)
