"""
Tests for project configuration system.
"""

import pytest
from pathlib import Path
import tempfile

from config.project_config import (
    ProjectConfig,
    load_config,
    save_default_config,
    get_preset,
    PRESETS,
)
from stableclust.errors import ConfigurationError


class TestProjectConfig:
    """Test the ProjectConfig dataclass."""

    def test_default_config_values(self):
        """Test default configuration values."""
        config = ProjectConfig()

        assert config.random_seed == 42
        assert config.parallel_workers == 0
        assert config.n_subsample == 100
        assert config.subsample_fraction == 0.7
        assert config.final_function == 'hierarchical01'
        assert config.missing_dissimilarity == 1.0
        assert config.merge_method == 'adjP'
        assert config.tie_break == 'index'

    def test_config_custom_values(self):
        """Test configuration with custom values."""
        config = ProjectConfig(
            n_subsample=10,
            parallel_workers=-1,
            ks=[2, 3],
            merge_cutoff=0.05,
        )

        assert config.n_subsample == 10
        assert config.parallel_workers == -1
        assert config.ks == [2, 3]
        assert config.merge_cutoff == 0.05

    def test_grid_lists_not_shared(self):
        """Test that list defaults are independent per instance."""
        a = ProjectConfig()
        b = ProjectConfig()
        a.ks.append(99)

        assert 99 not in b.ks

    def test_validate_passes_defaults(self):
        """Test that defaults validate and validate() returns self."""
        config = ProjectConfig()

        assert config.validate() is config

    @pytest.mark.parametrize("field, value", [
        ('subsample_fraction', 0.0),
        ('subsample_fraction', 1.2),
        ('n_subsample', -1),
        ('ks', [0, 3]),
        ('alphas', [1.5]),
        ('betas', [0.0]),
        ('combine_proportion', 2.0),
        ('tie_break', 'random'),
        ('contrast_type', 'Everything'),
        ('dendro_representative', 'centroid'),
    ])
    def test_validate_rejects(self, field, value):
        """Test fail-fast validation of bad values."""
        config = ProjectConfig(**{field: value})

        with pytest.raises(ConfigurationError):
            config.validate()

    def test_to_dict(self):
        """Test plain-dict export."""
        data = ProjectConfig().to_dict()

        assert data['ks'] == [4, 6, 8]
        assert data['contrast_type'] == 'OneAgainstAll'


class TestLoadConfig:
    """Test configuration loading."""

    def test_load_config_no_file(self):
        """Test loading config when no file exists returns defaults."""
        config = load_config(Path('/nonexistent/path/config.yaml'))

        assert isinstance(config, ProjectConfig)
        assert config.n_subsample == 100  # Default value

    def test_load_config_from_yaml(self, tmp_path):
        """Test loading config from YAML file."""
        yaml_content = """
execution:
  random_seed: 7
  parallel_workers: 4

subsampling:
  n_subsample: 25
  missing_dissimilarity: null

cluster_many:
  ks: [2, 3, 5]
  sequential: [true, false]

merge:
  merge_method: pvalue
  merge_cutoff: 0.05
"""
        config_path = tmp_path / 'stableclust.yaml'
        config_path.write_text(yaml_content)

        config = load_config(config_path)

        assert config.random_seed == 7
        assert config.parallel_workers == 4
        assert config.n_subsample == 25
        assert config.missing_dissimilarity is None
        assert config.ks == [2, 3, 5]
        assert config.sequential == [True, False]
        assert config.merge_method == 'pvalue'
        assert config.merge_cutoff == 0.05

    def test_load_config_partial_yaml(self, tmp_path):
        """Test loading config with only some values specified."""
        yaml_content = """
consensus:
  combine_proportion: 0.9
"""
        config_path = tmp_path / 'stableclust.yaml'
        config_path.write_text(yaml_content)

        config = load_config(config_path)

        # Specified value
        assert config.combine_proportion == 0.9
        # Default values
        assert config.n_subsample == 100
        assert config.dendro_linkage == 'average'

    def test_load_config_invalid_yaml(self, tmp_path):
        """Test that unreadable YAML falls back to defaults."""
        config_path = tmp_path / 'stableclust.yaml'
        config_path.write_text("execution: [unclosed\n")

        config = load_config(config_path)

        assert config == ProjectConfig()

    def test_load_config_not_a_mapping(self, tmp_path):
        """Test that a top-level list falls back to defaults."""
        config_path = tmp_path / 'stableclust.yaml'
        config_path.write_text("- one\n- two\n")

        assert load_config(config_path) == ProjectConfig()

    def test_load_config_searches_cwd(self, tmp_path, monkeypatch):
        """Test that stableclust.yaml in the working directory is found."""
        (tmp_path / 'stableclust.yaml').write_text("features:\n  top_features: 3\n")
        monkeypatch.chdir(tmp_path)

        assert load_config().top_features == 3


class TestSaveDefaultConfig:
    """Test saving default configuration."""

    def test_save_creates_file(self):
        """Test that save_default_config creates a file."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / 'test_config.yaml'
            result_path = save_default_config(output_path)

            assert result_path.exists()
            assert result_path.stat().st_size > 0

    def test_saved_config_has_all_sections(self):
        """Test that saved config has all required sections."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / 'test_config.yaml'
            save_default_config(output_path)

            content = output_path.read_text()

            for section in ('execution:', 'subsampling:', 'cluster_many:', 'sequential:',
                            'consensus:', 'dendrogram:', 'merge:', 'features:'):
                assert section in content

    def test_saved_config_is_loadable(self):
        """Test that saved config loads back to the defaults."""
        with tempfile.TemporaryDirectory() as tmpdir:
            output_path = Path(tmpdir) / 'test_config.yaml'
            save_default_config(output_path)

            config = load_config(output_path)

            assert config == ProjectConfig()


class TestPresets:
    """Test configuration presets."""

    def test_presets_exist(self):
        """Test that expected presets exist."""
        assert 'quick' in PRESETS
        assert 'default' in PRESETS
        assert 'thorough' in PRESETS

    def test_get_preset_quick(self):
        """Test getting quick preset."""
        config = get_preset('quick')

        assert config.n_subsample == 20
        assert config.ks == [4, 6]

    def test_get_preset_thorough(self):
        """Test getting thorough preset."""
        config = get_preset('thorough')

        assert config.n_subsample == 200
        assert config.reduce_methods == ['pca', 'var']

    def test_presets_validate(self):
        """Test that every preset is a valid configuration."""
        for config in PRESETS.values():
            config.validate()

    def test_get_preset_unknown_raises(self):
        """Test that unknown preset raises ValueError."""
        with pytest.raises(ValueError, match="Unknown preset"):
            get_preset('unknown_preset')
