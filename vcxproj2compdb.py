import os
import re
import sys
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType

MSBUILD_NAMESPACE = 'http://schemas.microsoft.com/developer/msbuild/2003'

INCLUDE_PLACEHOLDER = '%(AdditionalIncludeDirectories)'
DEFINITION_PLACEHOLDER = '%(PreprocessorDefinitions)'
OPTIONS_PLACEHOLDER = '%(AdditionalOptions)'
INHERITANCE_PLACEHOLDERS = (INCLUDE_PLACEHOLDER, DEFINITION_PLACEHOLDER, OPTIONS_PLACEHOLDER)

# '$(Name)' or '$(Name(x86))'; tokens without a table entry are left in place
_MACRO_TOKEN = re.compile(r'\$\([^()$]*(?:\([^()$]*\))?\)')


class CompileDbError(Exception):
    """Base class for every error reported by the converter"""


class InvalidPathError(CompileDbError):
    pass


class UnsupportedFormatError(CompileDbError):
    pass


class NoProjectsFoundError(CompileDbError):
    pass


class ProjectParseError(CompileDbError):
    pass


class NoConfigurationsDeclaredError(CompileDbError):
    pass


class ConfigurationNotFoundError(CompileDbError):
    """Requested configuration is neither declared nor reachable by fallback"""

    def __init__(self, project_path, requested, available):
        self.project_path = project_path
        self.requested = requested
        self.available = list(available)
        names = ', '.join(str(key) for key in self.available)
        super().__init__(
            f"{project_path}: configuration '{requested}' not found "
            f"(available: {names})"
        )


class SerializationError(CompileDbError):
    pass


@dataclass(frozen=True)
class ConfigurationKey:
    configuration: str
    platform: str

    @classmethod
    def parse(cls, text):
        """Split 'Debug|x64' into its two halves; a missing platform is ''"""
        configuration, _, platform = text.strip().partition('|')
        return cls(configuration.strip(), platform.strip())

    @property
    def has_platform(self):
        return bool(self.configuration) and bool(self.platform)

    def __str__(self):
        return f'{self.configuration}|{self.platform}'


class Scope(Enum):
    PROPERTY_WIDE = 'property-wide'
    PER_CONFIGURATION = 'per-configuration'
    PER_ITEM = 'per-item'


@dataclass(frozen=True)
class CompileSettings:
    """Include/define/option/using lists attached to one scope of a project"""
    scope: Scope
    include_directories: str = ''
    preprocessor_definitions: str = ''
    additional_options: str = ''
    using_directories: str = ''
    condition: str = ''

    def fields(self):
        return (
            self.include_directories,
            self.preprocessor_definitions,
            self.additional_options,
            self.using_directories,
        )

    def is_empty(self):
        return not any(value.strip() for value in self.fields())

    def substituted(self, table):
        """Return a copy with every field passed through substitute_macros"""
        return CompileSettings(
            scope=self.scope,
            include_directories=substitute_macros(self.include_directories, table),
            preprocessor_definitions=substitute_macros(self.preprocessor_definitions, table),
            additional_options=substitute_macros(self.additional_options, table),
            using_directories=substitute_macros(self.using_directories, table),
            condition=self.condition,
        )


@dataclass(frozen=True)
class SourceFile:
    path: str
    override: CompileSettings = None
    excluded: tuple = ()

    def is_excluded(self, key):
        """Check ExcludedFromBuild entries against a configuration key"""
        for condition, value in self.excluded:
            if value.strip().lower() != 'true':
                continue
            if not condition or condition_matches(condition, key):
                return True
        return False

    def override_applies(self, configuration):
        """
        Per-item overrides are picked up when the requested configuration text
        appears in any of their values.  This is a textual heuristic and does not
        look at Condition attributes.
        """
        if self.override is None or not configuration:
            return False
        return any(configuration in value for value in self.override.fields())


@dataclass(frozen=True)
class VcxProject:
    path: Path
    configurations: tuple = ()
    property_groups: tuple = ()
    item_definitions: tuple = ()
    sources: tuple = ()
    imports: tuple = ()

    @property
    def directory(self):
        return self.path.parent

    @property
    def name(self):
        return self.path.stem


@dataclass(frozen=True)
class ResolvedConfiguration:
    requested: str
    key: ConfigurationKey
    settings: CompileSettings
    macros: MappingProxyType

    @property
    def is_fallback(self):
        return str(self.key) != self.requested


# ---------------------------------------------------------------------------
# Macro substitution
# ---------------------------------------------------------------------------

def snapshot_environment(environ=None):
    """Freeze the process environment once so resolution never reads os.environ"""
    if environ is None:
        environ = os.environ
    return MappingProxyType(dict(environ))


def build_macro_table(environment, project_dir, key, solution_dir=None):
    """
    Build the '$(Name)' -> value table used by substitute_macros.

    Environment variables go in first and the MSBuild built-ins last, so a
    variable called e.g. 'Platform' never hides the resolved platform.
    """
    table = {}
    for name, value in (environment or {}).items():
        if name:
            table[f'$({name})'] = value

    if solution_dir is None:
        solution_dir = project_dir

    table['$(ProjectDir)'] = str(project_dir)
    table['$(Configuration)'] = key.configuration
    table['$(ConfigurationName)'] = key.configuration
    table['$(Platform)'] = key.platform
    table['$(SolutionDir)'] = str(solution_dir)
    return MappingProxyType(table)


def substitute_macros(text, table):
    """Replace every '$(Name)' token that has a table entry, in a single pass"""
    if not text or '$(' not in text:
        return text
    return _MACRO_TOKEN.sub(lambda m: table.get(m.group(0), m.group(0)), text)


def macro_spans(text):
    """(start, end) of every outermost '$(...)' token, nested parentheses included"""
    text = text or ''
    spans = []
    start = text.find('$(')
    while start != -1:
        depth = 0
        end = len(text)
        for pos in range(start + 1, len(text)):
            if text[pos] == '(':
                depth += 1
            elif text[pos] == ')':
                depth -= 1
                if depth == 0:
                    end = pos + 1
                    break
        spans.append((start, end))
        start = text.find('$(', end)
    return spans


def find_unresolved_macros(text):
    return [text[start:end] for start, end in macro_spans(text)]


def drop_unresolved_entries(value, separator=';'):
    """
    Remove every list entry that still holds a '$(...)' token.

    Entries are split on separator (None splits on whitespace), but never
    inside a token, so a property function is dropped together with the
    entry around it.  Returns the cleaned value and the dropped tokens.
    """
    value = value or ''
    spans = dict(macro_spans(value))
    if not spans:
        return value, []

    kept = []
    entry = ''
    tainted = False
    pos = 0
    while pos < len(value):
        if pos in spans:
            tainted = True
            entry += value[pos:spans[pos]]
            pos = spans[pos]
            continue
        char = value[pos]
        if char == separator or (separator is None and char.isspace()):
            if not tainted:
                kept.append(entry)
            entry = ''
            tainted = False
        else:
            entry += char
        pos += 1
    if not tainted:
        kept.append(entry)

    joiner = ' ' if separator is None else separator
    cleaned = joiner.join(item.strip() for item in kept if item.strip())
    return cleaned, find_unresolved_macros(value)


# ---------------------------------------------------------------------------
# List merger and placeholder sanitizer
# ---------------------------------------------------------------------------

def split_list(value):
    """Split a semicolon list into trimmed tokens, skipping '' and '.'"""
    tokens = []
    for part in (value or '').split(';'):
        part = part.strip()
        if part and part != '.':
            tokens.append(part)
    return tokens


def merge_lists(*values):
    """Merge several semicolon-delimited lists into one, keeping input order"""
    merged = []
    for value in values:
        merged.extend(split_list(value))
    return ';'.join(merged)


def strip_placeholders(value, markers=INHERITANCE_PLACEHOLDERS):
    """Remove MSBuild inheritance markers and tidy the remaining separators"""
    if not value:
        return ''
    for marker in markers:
        value = value.replace(f';{marker}', '')
        value = value.replace(f'{marker};', '')
        value = value.replace(marker, '')
    while ';;' in value:
        value = value.replace(';;', ';')
    return value.strip(';')


def sanitize_include_directories(value):
    return strip_placeholders(value, (INCLUDE_PLACEHOLDER,))


def sanitize_preprocessor_definitions(value):
    return strip_placeholders(value, (DEFINITION_PLACEHOLDER,))


def sanitize_additional_options(value):
    return (value or '').replace(OPTIONS_PLACEHOLDER, '').strip()


# ---------------------------------------------------------------------------
# Project model
# ---------------------------------------------------------------------------

def _strip_namespace(root):
    """Drop the MSBuild namespace so lookups work on plain tag names"""
    for elem in root.iter():
        if isinstance(elem.tag, str) and '}' in elem.tag:
            elem.tag = elem.tag.split('}', 1)[1]


def _text(element, tag):
    """Join the text of every direct child named tag (semicolon separated)"""
    values = []
    for child in element.findall(tag):
        if child.text and child.text.strip():
            values.append(child.text.strip())
    return ';'.join(values)


def condition_matches(condition, key):
    """
    Best-effort condition matcher.

    MSBuild conditions are not evaluated; a condition matches when the
    canonical 'Configuration|Platform' text of key is a case-sensitive
    substring of the raw attribute.
    """
    return str(key) in (condition or '')


def get_configurations(root):
    """Declared ProjectConfiguration keys, first occurrence wins"""
    configs = []
    for item_group in root.findall('ItemGroup'):
        for proj_config in item_group.findall('ProjectConfiguration'):
            include = proj_config.get('Include', '').strip()
            configuration = _text(proj_config, 'Configuration')
            platform = _text(proj_config, 'Platform')
            if '|' in include:
                key = ConfigurationKey.parse(include)
            elif configuration and platform:
                key = ConfigurationKey(configuration, platform)
            else:
                continue
            if key not in configs:
                configs.append(key)
    return configs


def get_property_groups(root):
    """PropertyGroup include directories, one PROPERTY_WIDE settings per group"""
    groups = []
    for prop_group in root.findall('PropertyGroup'):
        includes = merge_lists(
            _text(prop_group, 'AdditionalIncludeDirectories'),
            _text(prop_group, 'IncludeDirectories'),
        )
        if not includes:
            continue
        groups.append(CompileSettings(
            scope=Scope.PROPERTY_WIDE,
            include_directories=includes,
            condition=prop_group.get('Condition', ''),
        ))
    return groups


def get_item_definitions(root):
    """ItemDefinitionGroup/ClCompile blocks as PER_CONFIGURATION settings"""
    definitions = []
    for item_def in root.findall('ItemDefinitionGroup'):
        compile_settings = item_def.find('ClCompile')
        if compile_settings is None:
            continue
        definitions.append(_compile_settings(
            compile_settings, Scope.PER_CONFIGURATION, item_def.get('Condition', '')))
    return definitions


def _compile_settings(element, scope, condition=''):
    return CompileSettings(
        scope=scope,
        include_directories=_text(element, 'AdditionalIncludeDirectories'),
        preprocessor_definitions=_text(element, 'PreprocessorDefinitions'),
        additional_options=_text(element, 'AdditionalOptions'),
        using_directories=_text(element, 'AdditionalUsingDirectories'),
        condition=condition,
    )


def get_source_files(root):
    """ClCompile items with an Include attribute, in declaration order"""
    sources = []
    for item_group in root.findall('ItemGroup'):
        for item in item_group.findall('ClCompile'):
            path = item.get('Include', '').strip()
            if not path:
                continue
            override = _compile_settings(item, Scope.PER_ITEM)
            excluded = tuple(
                (child.get('Condition', ''), child.text or '')
                for child in item.findall('ExcludedFromBuild')
            )
            sources.append(SourceFile(
                path=path,
                override=None if override.is_empty() else override,
                excluded=excluded,
            ))
    return sources


def parse_project(data, path):
    """
    Build a VcxProject from raw XML.

    Args:
        data: XML document as str or bytes
        path: location of the .vcxproj, used for ProjectDir and messages
    """
    project_path = Path(os.path.abspath(path))
    try:
        root = ET.fromstring(data)
    except ET.ParseError as e:
        raise ProjectParseError(f'{project_path}: {e}') from e

    _strip_namespace(root)
    if root.tag != 'Project':
        raise ProjectParseError(f"{project_path}: root element is '{root.tag}', expected 'Project'")

    return VcxProject(
        path=project_path,
        configurations=tuple(get_configurations(root)),
        property_groups=tuple(get_property_groups(root)),
        item_definitions=tuple(get_item_definitions(root)),
        sources=tuple(get_source_files(root)),
        imports=tuple(imp.get('Project', '') for imp in root.iter('Import')),
    )


def load_project(path):
    """Read and parse a .vcxproj file"""
    path = Path(path)
    if not path.is_file():
        raise InvalidPathError(f'{path}: project file does not exist')
    try:
        data = path.read_bytes()
    except OSError as e:
        raise InvalidPathError(f'{path}: {e}') from e
    return parse_project(data, path)


# ---------------------------------------------------------------------------
# Configuration resolver
# ---------------------------------------------------------------------------

def match_configuration(project, requested):
    """Pick the declared key for a request: exact match, then same platform"""
    configs = project.configurations
    if not configs:
        raise NoConfigurationsDeclaredError(
            f'{project.path}: no ProjectConfiguration entries declared')

    for key in configs:
        if str(key) == requested:
            return key

    wanted = ConfigurationKey.parse(requested)
    if '|' in requested and wanted.has_platform:
        for key in configs:
            if key.platform == wanted.platform:
                return key

    raise ConfigurationNotFoundError(project.path, requested, configs)


def resolve_configuration(project, requested, environment, solution_dir=None):
    """
    Resolve the compile settings of project for the requested configuration.

    Property groups without a condition (or matching the key) contribute their
    include directories ahead of the matching ItemDefinitionGroup.
    """
    key = match_configuration(project, requested)

    settings = CompileSettings(scope=Scope.PER_CONFIGURATION)
    for item_def in project.item_definitions:
        if condition_matches(item_def.condition, key):
            settings = item_def
            break

    property_includes = [
        group.include_directories
        for group in project.property_groups
        if not group.condition or condition_matches(group.condition, key)
    ]

    merged = CompileSettings(
        scope=Scope.PER_CONFIGURATION,
        include_directories=merge_lists(*property_includes, settings.include_directories),
        preprocessor_definitions=settings.preprocessor_definitions,
        additional_options=settings.additional_options,
        using_directories=settings.using_directories,
        condition=settings.condition,
    )

    table = build_macro_table(environment, project.directory, key, solution_dir)
    return ResolvedConfiguration(
        requested=requested,
        key=key,
        settings=merged.substituted(table),
        macros=table,
    )


def main():
    import argparse
    parser = argparse.ArgumentParser(description='Show the compile settings a Visual Studio project resolves to')
    parser.add_argument('vcxproj_path', help='Path to the .vcxproj file')
    parser.add_argument('--config', '-c', dest='config', default='Debug|x64',
                        help='Configuration to resolve, e.g. Debug|x64')

    args = parser.parse_args()
    try:
        project = load_project(args.vcxproj_path)
        print(f"Project: {project.path}")
        print(f"Configurations: {', '.join(str(key) for key in project.configurations)}")
        resolved = resolve_configuration(project, args.config, snapshot_environment())
    except CompileDbError as e:
        print(e, file=sys.stderr)
        sys.exit(1)

    if resolved.is_fallback:
        print(f"  Warning: '{args.config}' not declared, using '{resolved.key}'", file=sys.stderr)

    settings = resolved.settings
    print(f"Resolved: {resolved.key}")
    print(f"  Include directories: {', '.join(split_list(settings.include_directories))}")
    print(f"  Preprocessor definitions: {', '.join(split_list(settings.preprocessor_definitions))}")
    print(f"  Additional options: {settings.additional_options}")
    print(f"  Using directories: {', '.join(split_list(settings.using_directories))}")
    print(f"  Sources: {len(project.sources)}")

if __name__ == '__main__':
    main()
