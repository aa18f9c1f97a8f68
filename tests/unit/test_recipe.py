"""Unit tests for recipes and the recipe builder."""

import pytest

from mlimage.common.errors import RecipeError, RecipeOrderError
from mlimage.recipe.recipe import Recipe, RecipeBuilder
from mlimage.recipe.steps import Step


def _simple_builder():
    builder = RecipeBuilder()
    builder.from_image("ubuntu:22.04")
    builder.env(CONDA_DIR="/opt/conda")
    builder.env(PATH="$CONDA_DIR/bin:$PATH")
    builder.run("apt-get update && apt-get install -y wget")
    builder.workdir("/workspace")
    builder.cmd(["/bin/bash"])
    return builder


class TestRecipe:
    """Test Recipe behaviour."""

    def test_accessors(self):
        recipe = _simple_builder().build()
        assert len(recipe) == 6
        assert recipe.base_image == "ubuntu:22.04"
        assert recipe.workdir == "/workspace"
        assert recipe.default_command == ("/bin/bash",)

    def test_environment_expands_against_earlier_steps(self):
        recipe = _simple_builder().build()
        env = recipe.environment({'PATH': '/usr/bin'})
        assert env['CONDA_DIR'] == '/opt/conda'
        assert env['PATH'] == '/opt/conda/bin:/usr/bin'

    def test_environment_pairs_in_one_step_see_previous_state(self):
        recipe = Recipe((Step.from_image("x"), Step.env([('A', '1'), ('B', '$A')])))
        assert recipe.environment() == {'A': '1', 'B': ''}

    def test_environment_at(self):
        recipe = _simple_builder().build()
        assert recipe.environment_at(2) == {'CONDA_DIR': '/opt/conda'}
        assert 'PATH' in recipe.environment_at(3)

    def test_layer_keys_chain(self):
        recipe = _simple_builder().build()
        changed = Recipe(recipe.steps[:3] + (Step.run("apt-get update"),) + recipe.steps[4:])

        keys, changed_keys = recipe.layer_keys(), changed.layer_keys()
        assert len(keys) == len(recipe)
        assert keys[:3] == changed_keys[:3]
        # A changed step invalidates every layer above it
        assert all(a != b for a, b in zip(keys[3:], changed_keys[3:]))

    def test_render_includes_header_and_comments(self):
        builder = RecipeBuilder()
        builder.from_image("ubuntu:22.04", comment="Base")
        recipe = builder.build(header="Example image")
        assert recipe.render() == "# Example image\n\n# Base\nFROM ubuntu:22.04\n"

    def test_swap_returns_new_recipe(self):
        recipe = _simple_builder().build()
        swapped = recipe.swap(4, 5)
        assert swapped is not recipe
        assert swapped[4] == recipe[5]
        assert recipe[4].render() == "WORKDIR /workspace"

    def test_independent_env_steps(self):
        recipe = Recipe((
            Step.from_image("x"),
            Step.env({'A': '1'}),
            Step.env({'B': '2'}),
            Step.env({'C': '$A'}),
            Step.run("echo $A"),
        ))
        assert recipe.is_independent(1, 2)
        assert not recipe.is_independent(1, 3)
        assert not recipe.is_independent(1, 4)
        assert recipe.swap(1, 2).environment() == recipe.environment()


class TestValidation:
    """Test recipe validation."""

    def test_empty_recipe(self):
        with pytest.raises(RecipeError):
            Recipe(()).validate()

    def test_must_start_with_from(self):
        with pytest.raises(RecipeError, match="must start with FROM"):
            Recipe((Step.run("echo hi"), Step.from_image("x"))).validate()

    def test_relative_workdir(self):
        with pytest.raises(RecipeError, match="absolute"):
            Recipe((Step.from_image("x"), Step.workdir("app"))).validate()

    def test_empty_payload(self):
        with pytest.raises(RecipeError, match="empty payload"):
            Recipe((Step.from_image("x"), Step.run(""))).validate()

    def test_tool_used_before_install(self):
        builder = RecipeBuilder()
        builder.from_image("ubuntu:22.04")
        builder.run("conda create -y -n ml python=3.10")
        builder.run("bash /tmp/miniconda.sh -b -p /opt/conda")

        with pytest.raises(RecipeOrderError) as excinfo:
            builder.build()

        assert excinfo.value.step_index == 1
        assert excinfo.value.tool == 'conda'
        assert excinfo.value.provider_index == 2

    def test_tool_from_base_image_is_allowed(self):
        builder = RecipeBuilder()
        builder.from_image("continuumio/miniconda3")
        builder.run("conda create -y -n ml python=3.10")
        assert builder.build().validate()


class TestRecipeBuilder:
    """Test builder composition."""

    def test_compose(self):
        base = RecipeBuilder().from_image("ubuntu:22.04")
        extra = RecipeBuilder().run("echo hello")
        base |= extra
        assert len(base) == 2
        assert base.build()[1].render() == "RUN echo hello"

    def test_build_without_validation(self):
        recipe = RecipeBuilder().run("echo hi").build(validate=False)
        assert len(recipe) == 1
