import json
import ntpath
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path

from vcxproj2compdb import (
    CompileDbError,
    InvalidPathError,
    NoProjectsFoundError,
    SerializationError,
    UnsupportedFormatError,
    drop_unresolved_entries,
    load_project,
    merge_lists,
    resolve_configuration,
    sanitize_additional_options,
    sanitize_include_directories,
    sanitize_preprocessor_definitions,
    snapshot_environment,
    split_list,
    substitute_macros,
)

DEFAULT_CONFIGURATION = 'Debug|x64'
DEFAULT_COMPILER = 'clang-cl.exe'
DEFAULT_OUTPUT = 'compile_commands.json'

PROJECT_REFERENCE_PATTERN = re.compile(r'"([^"\r\n]+\.vcxproj)"')


@dataclass(frozen=True)
class VsSolution:
    path: Path
    projects: tuple = ()

    @property
    def directory(self):
        return self.path.parent


@dataclass(frozen=True)
class CompileCommand:
    directory: str
    file: str
    command: str

    def to_dict(self):
        return {
            'directory': self.directory,
            'command': self.command,
            'file': self.file,
        }


# ---------------------------------------------------------------------------
# Solution model
# ---------------------------------------------------------------------------

def find_project_references(content):
    """Extract quoted *.vcxproj paths from solution text, in file order"""
    references = []
    for match in PROJECT_REFERENCE_PATTERN.finditer(content):
        reference = match.group(1).replace('"', '').strip()
        if reference:
            references.append(reference.replace('\\', '/'))
    return references


def load_solution(path):
    """
    Load a .sln (every referenced .vcxproj) or a single .vcxproj.

    A project passed directly becomes a one-project solution rooted at the
    project's own directory.
    """
    path = Path(path)
    ext = path.suffix.lower()
    if ext not in ('.sln', '.vcxproj'):
        raise UnsupportedFormatError(
            f'unsupported file format: {ext or path.name}, only .sln and .vcxproj are supported')

    path = Path(os.path.abspath(path))
    if not path.is_file():
        raise InvalidPathError(f'{path}: file does not exist')

    if ext == '.vcxproj':
        return VsSolution(path=path, projects=(load_project(path),))

    try:
        with open(path, 'r', encoding='utf-8-sig', errors='replace') as f:
            content = f.read()
    except OSError as e:
        raise InvalidPathError(f'{path}: {e}') from e

    references = find_project_references(content)
    if not references:
        raise NoProjectsFoundError(f'{path}: no .vcxproj project found in solution')

    projects = tuple(load_project(path.parent / reference) for reference in references)
    return VsSolution(path=path, projects=projects)


# ---------------------------------------------------------------------------
# System include providers
# ---------------------------------------------------------------------------

class SystemIncludeProvider:
    """Supplies toolchain include directories appended after project includes"""

    def include_directories(self, environment):
        raise NotImplementedError


class NoSystemIncludes(SystemIncludeProvider):

    def include_directories(self, environment):
        return []


class MsvcSystemIncludes(SystemIncludeProvider):
    """MSVC and Windows SDK headers, from a developer prompt or the VS 2022 defaults"""

    DEFAULT_TOOLSET = 'v143'
    SDK_SUBDIRS = ('um', 'shared', 'winrt', 'cppwinrt')
    FALLBACK_DIRS = (
        'C:\\Program Files\\Microsoft Visual Studio\\2022\\Community\\VC\\Tools\\MSVC\\14.39.33519\\include',
        'C:\\Program Files (x86)\\Windows Kits\\10\\Include\\10.0.22621.0\\um',
        'C:\\Program Files (x86)\\Windows Kits\\10\\Include\\10.0.22621.0\\shared',
        'C:\\Program Files (x86)\\Windows Kits\\10\\Include\\10.0.22621.0\\winrt',
    )

    def include_directories(self, environment):
        dirs = []
        vs_install_dir = environment.get('VSINSTALLDIR', '')
        if vs_install_dir:
            toolset = environment.get('PlatformToolsetVersion') or self.DEFAULT_TOOLSET
            dirs.append(ntpath.join(vs_install_dir, 'VC', 'Tools', 'MSVC', toolset, 'include'))

            sdk_dir = environment.get('WindowsSdkDir', '')
            sdk_version = environment.get('WindowsSdkVersion', '')
            if sdk_dir and sdk_version:
                for subdir in self.SDK_SUBDIRS:
                    dirs.append(ntpath.join(sdk_dir, 'Include', sdk_version, subdir))

        if not dirs:
            dirs.extend(self.FALLBACK_DIRS)
        return dirs


SYSTEM_INCLUDE_PROVIDERS = {
    'msvc': MsvcSystemIncludes,
    'none': NoSystemIncludes,
}


# ---------------------------------------------------------------------------
# Compile-command generator
# ---------------------------------------------------------------------------

def default_definitions(configuration):
    """Platform and debug macros clang-cl would otherwise not see"""
    lowered = configuration.lower()
    defines = ['WIN32', '_WINDOWS', '_MBCS']
    if 'debug' in lowered:
        defines.extend(['_DEBUG', 'DEBUG'])
    else:
        defines.append('NDEBUG')
    if 'win32' in lowered:
        defines.append('_WIN32')
    elif 'x64' in lowered:
        defines.append('_WIN64')
    return defines


def _prefixed(values, prefix):
    return ''.join(f'{prefix}{value} ' for value in split_list(values)).strip()


def format_command(compiler, defines, includes, options, source):
    """Assemble compiler, -D block, -I block, options and '-c file'"""
    parts = [compiler]
    for block in (_prefixed(defines, '-D'), _prefixed(includes, '-I'), options.strip()):
        if block:
            parts.append(block)
    parts.extend(['-c', source])
    return ' '.join(parts)


def _drop_leftovers(value, project, seen, separator=';'):
    """Drop list entries still holding a $(...) token, warning once per token"""
    value, tokens = drop_unresolved_entries(value, separator)
    for token in tokens:
        if token not in seen:
            seen.add(token)
            print(f"  Warning: {project.path}: unresolved macro {token}, entry dropped", file=sys.stderr)
    return value


def generate_compile_commands(solution, configuration, environment,
                              system_includes=None, compiler=DEFAULT_COMPILER,
                              skip_excluded=False, verbose=False):
    """
    Produce one CompileCommand per source file of every project.

    Resolution errors propagate and abort the whole run; the caller gets no
    partial list.
    """
    if system_includes is None:
        system_includes = NoSystemIncludes()
    system_dirs = ';'.join(system_includes.include_directories(environment))
    solution_macros = {'$(SolutionDir)': str(solution.directory)}
    default_defines = ';'.join(default_definitions(configuration))

    commands = []
    for project in solution.projects:
        if verbose:
            names = ', '.join(str(key) for key in project.configurations)
            print(f"{project.path}: configurations [{names}]", file=sys.stderr)

        resolved = resolve_configuration(project, configuration, environment, solution.directory)
        if resolved.is_fallback:
            print(f"  Warning: {project.path}: configuration '{configuration}' not declared, "
                  f"using '{resolved.key}'", file=sys.stderr)

        settings = resolved.settings
        unresolved = set()
        for source in project.sources:
            if skip_excluded and source.is_excluded(resolved.key):
                if verbose:
                    print(f"  Excluding source from build: {source.path}", file=sys.stderr)
                continue

            item_includes = item_defines = item_options = ''
            if source.override_applies(configuration):
                override = source.override.substituted(resolved.macros)
                item_includes = override.include_directories
                item_defines = override.preprocessor_definitions
                item_options = override.additional_options

            includes = merge_lists(settings.include_directories, settings.using_directories,
                                   item_includes, system_dirs)
            defines = merge_lists(settings.preprocessor_definitions, item_defines, default_defines)
            options = ' '.join(split_list(merge_lists(settings.additional_options, item_options)))

            includes = substitute_macros(includes, solution_macros)
            defines = substitute_macros(defines, solution_macros)
            options = substitute_macros(options, solution_macros)

            includes = _drop_leftovers(sanitize_include_directories(includes), project, unresolved)
            defines = _drop_leftovers(sanitize_preprocessor_definitions(defines), project, unresolved)
            options = _drop_leftovers(sanitize_additional_options(options), project, unresolved, None)
            options = ' '.join(options.split())

            commands.append(CompileCommand(
                directory=str(project.directory),
                file=source.path,
                command=format_command(compiler, defines, includes, options, source.path),
            ))
    return commands


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def dump_compile_commands(commands):
    try:
        return json.dumps([command.to_dict() for command in commands], indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f'could not serialize compile commands: {e}') from e


def write_compile_commands(text, path):
    """Write the database as UTF-8, replacing any previous file"""
    try:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(text)
            f.write('\n')
    except OSError as e:
        raise SerializationError(f'{path}: {e}') from e


def emit_compile_commands(text, stream=None):
    """Print the database as UTF-8 whatever encoding the console uses"""
    if stream is None:
        stream = sys.stdout
    buffer = getattr(stream, 'buffer', None)
    if buffer is None:
        stream.write(text + '\n')
        return
    stream.flush()
    buffer.write((text + '\n').encode('utf-8'))
    buffer.flush()


def main(argv=None):
    import argparse
    parser = argparse.ArgumentParser(description='Generate compile_commands.json from a Visual Studio solution')
    parser.add_argument('--source', '-s', dest='path', required=True,
                        help='Path to the .sln or .vcxproj file')
    parser.add_argument('--config', '-c', dest='config', default=DEFAULT_CONFIGURATION,
                        help='Configuration as configuration|platform (default: Debug|x64)')
    parser.add_argument('--output', '-o', dest='output', default=DEFAULT_OUTPUT,
                        help='Where to write the database (default: compile_commands.json)')
    parser.add_argument('--compiler', default=DEFAULT_COMPILER,
                        help='Compiler name placed at the start of every command')
    parser.add_argument('--system-includes', choices=sorted(SYSTEM_INCLUDE_PROVIDERS), default='msvc',
                        help='Toolchain include directories to append')
    parser.add_argument('--skip-excluded', action='store_true',
                        help='Leave out sources marked ExcludedFromBuild for the configuration')
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Print declared configurations of each project to stderr')

    args = parser.parse_args(argv)
    environment = snapshot_environment()

    try:
        solution = load_solution(args.path)
        commands = generate_compile_commands(
            solution,
            args.config,
            environment,
            system_includes=SYSTEM_INCLUDE_PROVIDERS[args.system_includes](),
            compiler=args.compiler,
            skip_excluded=args.skip_excluded,
            verbose=args.verbose,
        )
        text = dump_compile_commands(commands)
        write_compile_commands(text, args.output)
    except CompileDbError as e:
        print(e, file=sys.stderr)
        return 1

    emit_compile_commands(text)
    return 0

if __name__ == '__main__':
    sys.exit(main())
