"""Tests for repository acquisition and workspace lifecycle."""

import io
import os
import zipfile

import pytest
from git.exc import GitCommandError, GitCommandNotFound

from posture_scanner.core import acquisition
from posture_scanner.core.acquisition import (
    AcquisitionError,
    ArchiveAcquirer,
    FallbackAcquirer,
    GitAcquirer,
    RepositoryReferenceError,
    materialized_tree,
    parse_repository_reference,
    sanitize_branch,
    validate_repository_reference,
)

from conftest import FakeResponse, FakeSession


def codeload(branch):
    return f'https://codeload.github.com/octocat/hello/zip/refs/heads/{branch}'


def zip_bytes(members):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w') as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


class RecordingAcquirer:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def acquire(self, repo_url, branch, workspace):
        self.calls.append((repo_url, branch, workspace))
        if self.error:
            raise self.error
        tree = os.path.join(workspace, 'tree')
        os.makedirs(tree)
        with open(os.path.join(tree, 'index.js'), 'w') as f:
            f.write('eval(x)')
        return tree


class TestReferences:

    @pytest.mark.parametrize('url, expected', [
        ('https://github.com/octocat/Hello-World', ('octocat', 'Hello-World')),
        ('https://github.com/octocat/Hello-World.git', ('octocat', 'Hello-World')),
        ('https://github.com/octocat/hello.js/', ('octocat', 'hello.js')),
        ('  https://github.com/a_b/c-d  ', ('a_b', 'c-d')),
    ])
    def test_accepted(self, url, expected):
        assert parse_repository_reference(url) == expected

    @pytest.mark.parametrize('url', [
        '',
        None,
        'http://github.com/octocat/hello',
        'https://gitlab.com/octocat/hello',
        'https://github.com/octocat',
        'https://github.com/octocat/hello/tree/main',
        'https://github.com/octocat/hello;rm -rf /',
        'file:///etc/passwd',
    ])
    def test_rejected(self, url):
        with pytest.raises(RepositoryReferenceError):
            parse_repository_reference(url)

    def test_canonical_form(self):
        assert validate_repository_reference('https://github.com/octocat/hello.git/') == 'https://github.com/octocat/hello'

    @pytest.mark.parametrize('branch, expected', [
        ('feature/login-v2', 'feature/login-v2'),
        ('main; rm -rf /', 'mainrm-rf/'),
        ('--upload-pack=touch', 'upload-packtouch'),
        ('', 'main'),
        (None, 'main'),
        ('$(whoami)', 'whoami'),
    ])
    def test_sanitize_branch(self, branch, expected):
        assert sanitize_branch(branch) == expected


class TestMaterializedTree:

    def test_workspace_removed_after_success(self):
        acquirer = RecordingAcquirer()

        with materialized_tree(acquirer, 'https://github.com/octocat/hello', 'dev') as root:
            assert os.path.isfile(os.path.join(root, 'index.js'))

        repo_url, branch, workspace = acquirer.calls[0]
        assert repo_url == 'https://github.com/octocat/hello'
        assert branch == 'dev'
        assert not os.path.exists(workspace)

    def test_workspace_removed_when_block_raises(self):
        acquirer = RecordingAcquirer()

        with pytest.raises(RuntimeError):
            with materialized_tree(acquirer, 'https://github.com/octocat/hello'):
                raise RuntimeError('scan crashed')

        assert not os.path.exists(acquirer.calls[0][2])

    def test_workspace_removed_when_acquisition_fails(self):
        acquirer = RecordingAcquirer(error=AcquisitionError('clone failed'))

        with pytest.raises(AcquisitionError):
            with materialized_tree(acquirer, 'https://github.com/octocat/hello'):
                pass

        assert not os.path.exists(acquirer.calls[0][2])

    def test_invalid_reference_never_reaches_acquirer(self):
        acquirer = RecordingAcquirer()

        with pytest.raises(RepositoryReferenceError):
            with materialized_tree(acquirer, 'https://example.com/not/github'):
                pass

        assert acquirer.calls == []


class TestArchiveAcquirer:

    def test_extracts_wrapped_tree(self, tmp_path):
        session = FakeSession({
            ('GET', codeload('main')): FakeResponse(content=zip_bytes({
                'hello-main/package.json': '{}',
                'hello-main/src/app.js': 'console.log(1)',
            })),
        })

        root = ArchiveAcquirer(session).acquire('https://github.com/octocat/hello', 'main', str(tmp_path))

        assert os.path.basename(root) == 'hello-main'
        assert os.path.isfile(os.path.join(root, 'src', 'app.js'))
        assert session.calls[0][2]['stream'] is True

    def test_falls_back_to_master(self, tmp_path):
        session = FakeSession({
            ('GET', codeload('main')): FakeResponse(status_code=404),
            ('GET', codeload('master')): FakeResponse(content=zip_bytes({'hello-master/a.js': 'x'})),
        })

        root = ArchiveAcquirer(session).acquire('https://github.com/octocat/hello', 'main', str(tmp_path))

        assert os.path.basename(root) == 'hello-master'

    def test_refuses_path_traversal(self, tmp_path):
        workspace = tmp_path / 'workspace'
        workspace.mkdir()
        session = FakeSession({
            ('GET', codeload('master')): FakeResponse(content=zip_bytes({
                'hello-master/ok.js': 'x',
                '../../escaped.txt': 'pwned',
            })),
        })

        with pytest.raises(AcquisitionError, match='escapes workspace'):
            ArchiveAcquirer(session).acquire('https://github.com/octocat/hello', 'master', str(workspace))

        assert not (tmp_path / 'escaped.txt').exists()

    def test_download_joins_chunks(self, tmp_path):
        class ChunkedResponse(FakeResponse):
            def iter_content(self, chunk_size=1):
                return super().iter_content(chunk_size=7)

        payload = zip_bytes({'hello-main/big.js': 'x = 1;\n' * 2000})
        session = FakeSession({('GET', codeload('main')): ChunkedResponse(content=payload)})
        acquirer = ArchiveAcquirer(session)

        content = acquirer._download(codeload('main'))

        assert isinstance(content, bytes)
        assert content == payload

    def test_size_limit(self, tmp_path):
        session = FakeSession({('GET', codeload('master')): FakeResponse(content=b'x' * 100)})

        with pytest.raises(AcquisitionError, match='size limit'):
            ArchiveAcquirer(session, max_size=10).acquire('https://github.com/octocat/hello', 'master', str(tmp_path))

    def test_invalid_zip(self, tmp_path):
        session = FakeSession({('GET', codeload('master')): FakeResponse(content=b'not a zip')})

        with pytest.raises(AcquisitionError, match='Invalid archive'):
            ArchiveAcquirer(session).acquire('https://github.com/octocat/hello', 'master', str(tmp_path))


class TestGitAcquirer:

    def test_falls_back_to_master(self, tmp_path, monkeypatch):
        clones = []

        def fake_clone_from(url, to_path, **kwargs):
            clones.append((url, kwargs['branch']))
            assert kwargs['depth'] == 1
            assert kwargs['env'] == {'GIT_TERMINAL_PROMPT': '0'}
            assert kwargs['kill_after_timeout'] == 30
            if kwargs['branch'] == 'main':
                raise GitCommandError(['git', 'clone'], 128, b'Remote branch main not found')
            os.makedirs(to_path)

        monkeypatch.setattr(acquisition.Repo, 'clone_from', fake_clone_from)

        root = GitAcquirer().acquire('https://github.com/octocat/hello', 'main', str(tmp_path))

        assert clones == [
            ('https://github.com/octocat/hello', 'main'),
            ('https://github.com/octocat/hello', 'master'),
        ]
        assert root == os.path.join(str(tmp_path), 'clone')

    def test_reports_failure(self, tmp_path, monkeypatch):
        branches = []

        def fake_clone_from(url, to_path, **kwargs):
            branches.append(kwargs['branch'])
            raise GitCommandError(['git', 'clone'], -9, b'')

        monkeypatch.setattr(acquisition.Repo, 'clone_from', fake_clone_from)

        with pytest.raises(AcquisitionError, match='Failed to clone'):
            GitAcquirer(timeout=5).acquire('https://github.com/octocat/hello', 'dev', str(tmp_path))

        assert branches == ['dev', 'master']

    def test_missing_git_executable(self, tmp_path, monkeypatch):
        def fake_clone_from(url, to_path, **kwargs):
            raise GitCommandNotFound('git', 'No such file or directory')

        monkeypatch.setattr(acquisition.Repo, 'clone_from', fake_clone_from)

        with pytest.raises(AcquisitionError, match='git executable not available'):
            GitAcquirer().acquire('https://github.com/octocat/hello', 'master', str(tmp_path))


class TestFallbackAcquirer:

    def test_uses_first_success(self, tmp_path):
        failing = RecordingAcquirer(error=AcquisitionError('git missing'))
        working = RecordingAcquirer()

        root = FallbackAcquirer([failing, working]).acquire('https://github.com/octocat/hello', 'main', str(tmp_path))

        assert root.endswith('tree')
        assert len(failing.calls) == 1

    def test_raises_last_error(self, tmp_path):
        acquirer = FallbackAcquirer([
            RecordingAcquirer(error=AcquisitionError('first')),
            RecordingAcquirer(error=AcquisitionError('second')),
        ])

        with pytest.raises(AcquisitionError, match='second'):
            acquirer.acquire('https://github.com/octocat/hello', 'main', str(tmp_path))
