"""Unit tests for the Docker engine client."""

from unittest.mock import MagicMock, patch

import pytest
from docker.errors import APIError, ContainerError, DockerException, ImageNotFound, NotFound

from mlimage.common.errors import (
    BuildFailedError,
    ContainerRunError,
    EngineError,
    ImageNotFoundError,
    RecipeError,
    RegistryError,
)
from mlimage.engine.docker_client import (
    ContainerEngine,
    ImageInfo,
    normalize_reference,
    parse_volume_specs,
    split_reference,
)
from mlimage.recipe.recipe import Recipe
from mlimage.recipe.steps import Step


class TestReferences:
    """Test image reference helpers."""

    def test_split_reference(self):
        assert split_reference('mlimage') == ('mlimage', 'latest')
        assert split_reference('registry.example.com/team/ml:1.0') == ('registry.example.com/team/ml', '1.0')
        assert split_reference('localhost:5000/ml') == ('localhost:5000/ml', 'latest')

    def test_normalize_reference(self):
        assert normalize_reference('mlimage') == 'mlimage:latest'


class TestVolumes:
    """Test volume spec parsing."""

    def test_parse(self, tmp_path):
        volumes = parse_volume_specs([f"{tmp_path}:/data", f"{tmp_path}/models:/models:ro"])
        assert volumes[str(tmp_path.resolve())] == {'bind': '/data', 'mode': 'rw'}
        assert volumes[str((tmp_path / 'models').resolve())] == {'bind': '/models', 'mode': 'ro'}

    @pytest.mark.parametrize('spec', ['/data', ':/data', '/a:/b:rx'])
    def test_invalid(self, spec):
        with pytest.raises(ValueError):
            parse_volume_specs([spec])


def test_image_info_from_image(make_image):
    image = make_image(tags=['ml:1'], env={'PATH': '/usr/bin', 'X': 'a=b'}, layers=['sha256:a', 'sha256:b'])
    info = ImageInfo.from_image(image)
    assert info.tags == ['ml:1']
    assert info.env == {'PATH': '/usr/bin', 'X': 'a=b'}
    assert info.cmd == ['/bin/bash']
    assert info.layers == ['sha256:a', 'sha256:b']


def test_engine_without_daemon():
    with patch('mlimage.engine.docker_client.docker.from_env', side_effect=DockerException('no socket')):
        with pytest.raises(EngineError, match="Could not connect"):
            ContainerEngine()


class TestBuild:
    """Test image builds."""

    def test_build_success(self, engine, docker_client, recipe, registry, tmp_path, make_image):
        seen = {}

        def build(**kwargs):
            seen['dockerfile'] = (tmp_path / kwargs['dockerfile']).read_text()
            return iter([
                {'stream': 'Step 1/11 : FROM nvidia/cuda\n'},
                {'stream': ' ---> 1234\n'},
                {'stream': 'Step 2/11 : ENV DEBIAN_FRONTEND=noninteractive\n'},
                {'aux': {'ID': 'sha256:feed'}},
                {'stream': 'Successfully tagged ml:latest\n'},
            ])

        docker_client.api.build.side_effect = build
        docker_client.images.get.return_value = make_image('sha256:feed', tags=['ml:latest'])

        info = engine.build(recipe, 'ml:latest', context_path=tmp_path)

        assert info.id == 'sha256:feed'
        assert seen['dockerfile'] == recipe.render()

        kwargs = docker_client.api.build.call_args.kwargs
        assert kwargs['path'] == str(tmp_path)
        assert kwargs['tag'] == 'ml:latest'
        assert kwargs['decode'] is True

        assert registry.get_sample_value('mlimage_builds_total', {'result': 'success'}) == 1.0
        assert registry.get_sample_value('mlimage_build_steps_total') == 2.0

    def test_build_leaves_context_untouched(self, engine, docker_client, recipe, tmp_path, make_image):
        existing = tmp_path / 'Dockerfile'
        existing.write_text("FROM alpine:3.19\nRUN echo custom\n")
        docker_client.api.build.return_value = iter([{'stream': 'Step 1/11 : FROM nvidia/cuda\n'}])
        docker_client.images.get.return_value = make_image('sha256:feed', tags=['ml:latest'])

        engine.build(recipe, 'ml:latest', context_path=tmp_path)

        assert docker_client.api.build.call_args.kwargs['dockerfile'] != 'Dockerfile'
        assert existing.read_text() == "FROM alpine:3.19\nRUN echo custom\n"
        assert [p.name for p in tmp_path.iterdir()] == ['Dockerfile']

    def test_build_failure_removes_rendered_recipe(self, engine, docker_client, recipe, tmp_path):
        docker_client.api.build.side_effect = APIError('daemon went away')

        with pytest.raises(BuildFailedError):
            engine.build(recipe, 'ml:latest', context_path=tmp_path)

        assert list(tmp_path.iterdir()) == []

    def test_build_failure_reports_step(self, engine, docker_client, recipe, registry, tmp_path):
        docker_client.api.build.return_value = iter([
            {'stream': 'Step 1/11 : FROM nvidia/cuda\n'},
            {'stream': 'Step 4/11 : RUN apt-get update\n'},
            {'error': 'failed', 'errorDetail': {
                'message': "The command '/bin/sh -c apt-get update' returned a non-zero code: 100"
            }},
        ])

        with pytest.raises(BuildFailedError) as excinfo:
            engine.build(recipe, 'ml:latest', context_path=tmp_path)

        assert excinfo.value.step == 4
        assert 'non-zero code: 100' in str(excinfo.value)
        assert excinfo.value.log[-1] == 'Step 4/11 : RUN apt-get update'
        docker_client.images.get.assert_not_called()
        assert registry.get_sample_value('mlimage_builds_total', {'result': 'failed'}) == 1.0

    def test_build_api_error(self, engine, docker_client, recipe, tmp_path):
        docker_client.api.build.side_effect = APIError('daemon went away')
        with pytest.raises(BuildFailedError):
            engine.build(recipe, 'ml:latest', context_path=tmp_path)

    def test_invalid_recipe_never_reaches_builder(self, engine, docker_client, tmp_path):
        recipe = Recipe((Step.run('echo hi'),))
        with pytest.raises(RecipeError):
            engine.build(recipe, 'ml:latest', context_path=tmp_path)
        docker_client.api.build.assert_not_called()


class TestRun:
    """Test container runs."""

    def test_run_returns_output(self, engine, docker_client):
        docker_client.containers.run.return_value = b"2.1.0\nTrue\n"

        output = engine.run('ml:latest', command=['python', '-V'], gpus=True, environment={'A': '1'})

        assert output == "2.1.0\nTrue\n"
        args, kwargs = docker_client.containers.run.call_args
        assert args == ('ml:latest',)
        assert kwargs['command'] == ['python', '-V']
        assert kwargs['remove'] is True
        assert kwargs['environment'] == {'A': '1'}
        request = kwargs['device_requests'][0]
        assert request.count == -1
        assert request.capabilities == [['gpu']]

    def test_run_without_gpus(self, engine, docker_client):
        docker_client.containers.run.return_value = b""
        engine.run('ml:latest')
        assert 'device_requests' not in docker_client.containers.run.call_args.kwargs

    def test_run_non_zero_exit(self, engine, docker_client):
        docker_client.containers.run.side_effect = ContainerError(
            MagicMock(), 1, 'python -c "import torch"', 'ml:latest',
            b"ModuleNotFoundError: No module named 'torch'"
        )

        with pytest.raises(ContainerRunError) as excinfo:
            engine.run('ml:latest', command='python -c "import torch"')

        assert excinfo.value.exit_status == 1
        assert 'torch' in excinfo.value.output

    def test_run_missing_image(self, engine, docker_client):
        docker_client.containers.run.side_effect = ImageNotFound('no such image')
        with pytest.raises(ImageNotFoundError):
            engine.run('missing:latest')


class TestShell:
    """Test interactive runs through the CLI."""

    def test_shell_arguments(self, engine, tmp_path):
        with patch('mlimage.engine.docker_client.shutil.which', return_value='/usr/bin/docker'), \
             patch('mlimage.engine.docker_client.subprocess.run') as mock_run:
            mock_run.return_value = MagicMock(returncode=0)

            code = engine.shell('ml:latest', volumes=[f"{tmp_path}:/workspace"], gpus=True, workdir='/workspace')

        assert code == 0
        args = mock_run.call_args.args[0]
        assert args[:4] == ['/usr/bin/docker', 'run', '--rm', '-it']
        assert ['--gpus', 'all'] == args[4:6]
        assert f"{tmp_path.resolve()}:/workspace:rw" in args
        assert args[-1] == 'ml:latest'

    def test_shell_requires_cli(self, engine):
        with patch('mlimage.engine.docker_client.shutil.which', return_value=None):
            with pytest.raises(EngineError, match="docker CLI"):
                engine.shell('ml:latest')


class TestDistribution:
    """Test save, load, tag, push and pull."""

    def test_save_streams_archive(self, engine, docker_client, tmp_path, make_image):
        image = make_image(tags=['mlimage:latest'])
        image.save.return_value = iter([b'abc', b'def'])
        docker_client.images.get.return_value = image

        path = engine.save('mlimage', tmp_path / 'out' / 'ml.tar')

        assert path.read_bytes() == b'abcdef'
        assert [p.name for p in path.parent.iterdir()] == ['ml.tar']
        image.save.assert_called_once_with(named='mlimage:latest')

    def test_save_interrupted_leaves_no_archive(self, engine, docker_client, registry, tmp_path, make_image):
        def chunks():
            yield b'abc'
            raise APIError('connection reset')

        image = make_image(tags=['mlimage:latest'])
        image.save.return_value = chunks()
        docker_client.images.get.return_value = image

        with pytest.raises(EngineError, match="Failed to save"):
            engine.save('mlimage', tmp_path / 'ml.tar')

        assert list(tmp_path.iterdir()) == []
        assert registry.get_sample_value(
            'mlimage_distribution_operations_total', {'operation': 'save', 'result': 'failed'}
        ) == 1.0

    def test_save_missing_image(self, engine, docker_client, tmp_path):
        docker_client.images.get.side_effect = ImageNotFound('no such image')
        with pytest.raises(ImageNotFoundError):
            engine.save('missing', tmp_path / 'ml.tar')

    def test_load(self, engine, docker_client, tmp_path, make_image):
        archive = tmp_path / 'ml.tar'
        archive.write_bytes(b'archive')
        docker_client.images.load.return_value = [make_image('sha256:abc', tags=['ml:latest'])]

        loaded = engine.load(archive)

        assert [i.id for i in loaded] == ['sha256:abc']
        assert loaded[0].tags == ['ml:latest']

    def test_tag(self, engine, docker_client, make_image):
        image = make_image()
        image.tag.return_value = True
        docker_client.images.get.return_value = image

        assert engine.tag('ml:latest', 'registry.example.com/ml:1.0') == 'registry.example.com/ml:1.0'
        image.tag.assert_called_once_with('registry.example.com/ml', tag='1.0')

    def test_tag_refused(self, engine, docker_client, make_image):
        image = make_image()
        image.tag.return_value = False
        docker_client.images.get.return_value = image
        with pytest.raises(EngineError):
            engine.tag('ml:latest', 'other')

    def test_push_returns_digest(self, engine, docker_client, registry):
        docker_client.images.push.return_value = iter([
            {'status': 'Pushing', 'id': 'abc'},
            {'status': '1.0: digest: sha256:beef size: 1234'},
            {'aux': {'Tag': '1.0', 'Digest': 'sha256:beef', 'Size': 1234}},
        ])

        assert engine.push('registry.example.com/ml:1.0') == 'sha256:beef'
        docker_client.images.push.assert_called_once_with(
            'registry.example.com/ml', tag='1.0', stream=True, decode=True, auth_config=None
        )
        assert registry.get_sample_value(
            'mlimage_distribution_operations_total', {'operation': 'push', 'result': 'success'}
        ) == 1.0

    def test_push_error(self, engine, docker_client):
        docker_client.images.push.return_value = iter([
            {'error': 'denied', 'errorDetail': {'message': 'denied: requested access to the resource is denied'}},
        ])
        with pytest.raises(RegistryError, match="denied"):
            engine.push('registry.example.com/ml:1.0')

    def test_pull(self, engine, docker_client, make_image):
        docker_client.images.pull.return_value = make_image('sha256:abc', tags=['ml:1.0'])
        info = engine.pull('ml:1.0')
        assert info.id == 'sha256:abc'
        docker_client.images.pull.assert_called_once_with('ml', tag='1.0')

    def test_pull_missing(self, engine, docker_client):
        docker_client.images.pull.side_effect = NotFound('manifest unknown')
        with pytest.raises(RegistryError):
            engine.pull('ml:does-not-exist')
