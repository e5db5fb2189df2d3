#!/usr/bin/env python3

# Generate Makefile dependencies for C sources from their "..." includes.
#
# usage: gendeps.py [-i] [-e] [-d] [-m makefile]... [-M makefile... --] dir...
#
# Everything after the marker line in each makefile is regenerated.
# Directives in the makefile above the marker control the output:
#
#   # @object-ending: ".o"        # @path-separator: "/"
#   # @line-width: "78"           # @continuation: "\"
#   # @exclude: "a.h,b.h"         # @include-command: "include"
#   # @external: "deps.mk"        # @selfrule: "1"
#   EXTERNAL_DEPENDENCIES = 0

import logging
import os
import re
import shutil
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from os.path import basename, dirname, join

MARKER = '#-- Everything below is generated by gendeps.py - do not edit --#\n'

ENCODING = 'utf-8'
ERRORS = 'surrogateescape'

log = logging.getLogger('gendeps')

block_comment = re.compile(r'/\*.*\*/')
line_comment = re.compile(r'//.*$')
include_line = re.compile(r'^\s*#\s*include\s+"(.*)"\s*$')
source_file = re.compile(r'^(.*)\.[Cc]$')
header_file = re.compile(r'\.[Hh]$')
seed_line = re.compile(r'^([^\s#$:]+\.h):')
directive_line = re.compile(r'^\s*#\s*@([a-z0-9-]+):\s*"([^"]*)"')
toggle_line = re.compile(r'^(\s*#?\s*EXTERNAL_DEPENDENCIES\s*=\s*)([01])\s*$')


class GenDepsError(Exception):
    pass


class UnresolvedDependency(GenDepsError):
    def __init__(self, includer, name):
        super().__init__('cannot determine path for dependency: ' + includer + ' -> ' + name)
        self.includer = includer
        self.name = name


class UnopenableTargetFile(GenDepsError):
    def __init__(self, file, reason):
        super().__init__('cannot open input: ' + file + ': ' + reason)
        self.file = file


class UnknownOption(GenDepsError):
    pass


class Deps:
    """Header paths and the include graph for one run.

    ``paths`` maps bare and directory-qualified header names to the path
    they resolve to. ``deps`` maps each scanned file to the set of paths
    it includes directly.
    """

    def __init__(self):
        self.paths = {}
        self.deps = {}
        self._closures = {}

    def register(self, name, path):
        old = self.paths.get(name)
        if old is None:
            self.paths[name] = path
            return True
        if old != path:
            log.warning('%s: keeping %s, ignoring %s', name, old, path)
        return False

    def resolve(self, name, includer):
        try:
            return self.paths[name]
        except KeyError:
            raise UnresolvedDependency(includer, name) from None

    def includes(self, file):
        try:
            f = open(file, encoding=ENCODING, errors=ERRORS, newline='')
        except OSError:
            # Most likely generated later in the build
            log.debug('%s: cannot open, assuming no dependencies', file)
            return set()
        found = set()
        with f:
            for line in f:
                line = block_comment.sub('', line.rstrip('\r\n'))
                line = line_comment.sub('', line)
                m = include_line.match(line)
                if m:
                    found.add(self.resolve(m.group(1), file))
        return found

    def scan(self, file):
        self._closures.clear()
        todo = [file]
        while todo:
            current = todo.pop()
            found = self.includes(current)
            self.deps[current] = found
            log.debug('%s: %d direct dependencies', current, len(found))
            for dep in sorted(found, reverse=True):
                if dep not in self.deps and dep not in todo:
                    todo.append(dep)

    def closure(self, file):
        try:
            return self._closures[file]
        except KeyError:
            pass
        seen = set()
        todo = list(self.deps.get(file, ()))
        while todo:
            dep = todo.pop()
            if dep in seen:
                continue
            seen.add(dep)
            todo.extend(self.deps.get(dep, ()))
        ret = sorted(seen)
        self._closures[file] = ret
        return ret


@dataclass
class EmitConfig:
    obj: str = '.o'
    sep: str = '/'
    cont: str = '\\'
    maxline: int = 78
    exclude: set = field(default_factory=set)
    include_command: str = None
    external: str = None
    selfrule: bool = False

    def set(self, key, value):
        if key == 'object-ending':
            self.obj = value
        elif key == 'path-separator':
            self.sep = value
        elif key == 'line-width':
            self.maxline = int(re.match(r'\s*(\d*)', value).group(1) or 0)
        elif key == 'continuation':
            self.cont = value
        elif key == 'exclude':
            self.exclude = set(v for v in value.split(',') if v)
        elif key == 'include-command':
            self.include_command = value
        elif key == 'external':
            self.external = value
        elif key == 'selfrule':
            self.selfrule = value not in ('', '0')
        else:
            log.debug('ignoring unknown directive: @%s', key)


def convert_file(file, sep):
    parts = [basename(file)]
    file = dirname(file)
    while file not in ('', os.curdir, os.sep):
        parts.insert(0, basename(file))
        file = dirname(file)
    if sep == '':
        # Flat output for make tools that search paths themselves
        return parts[-1]
    return sep.join(parts)


def wrap_rule(target, deps, config):
    out = [target]
    length = len(target)
    for dep in deps:
        if dep in config.exclude:
            continue
        item = convert_file(dep, config.sep)
        cost = len(item) + 1
        if length + cost > config.maxline - 2:
            out.append(' ' + config.cont + '\n ' + item)
            length = cost
        else:
            out.append(' ' + item)
            length += cost
    out.append('\n')
    return ''.join(out)


def emit_rules(deps, config):
    files = sorted(deps.deps)
    if config.selfrule and config.external is not None:
        yield wrap_rule(convert_file(config.external, config.sep) + ':', files, config)
    for file in files:
        m = source_file.match(file)
        if m:
            target = convert_file(m.group(1), config.sep) + config.obj + ':'
            yield wrap_rule(target, [file] + deps.closure(file), config)


def scan_dirs(deps, dirs):
    sources = []
    for dir in dirs:
        try:
            names = sorted(os.listdir(dir))
        except OSError as e:
            raise GenDepsError('cannot open directory: ' + dir + ': ' + e.strerror) from e
        for name in names:
            path = name if dir == os.curdir else join(dir, name)
            if source_file.match(name):
                sources.append(path)
            elif header_file.search(name):
                log.debug('Filesystem: %s -> %s', name, path)
                deps.register(name, path)
                deps.register(path, path)
    return sources


def is_marker(line):
    return line.rstrip('\r\n') == MARKER.rstrip('\n')


def read_header(file):
    try:
        f = open(file, encoding=ENCODING, errors=ERRORS, newline='')
    except OSError as e:
        raise UnopenableTargetFile(file, e.strerror) from e
    lines = []
    with f:
        for line in f:
            lines.append(line)
            if is_marker(line):
                break
    return lines


def seed_paths(deps, file):
    for line in read_header(file):
        m = seed_line.match(line)
        if m:
            path = m.group(1)
            name = basename(path)
            if deps.register(name, path):
                log.info('Makefile: %s -> %s', name, path)


def configure(lines, externalize=False, force_inline=False):
    config = EmitConfig()
    toggle = False
    out = []
    for line in lines:
        m = directive_line.match(line)
        if m:
            config.set(m.group(1), m.group(2))
        else:
            m = toggle_line.match(line)
            if m:
                toggle = externalize or (not force_inline and m.group(2) == '1')
                line = m.group(1) + str(int(toggle)) + '\n'
        out.append(line)
    if not out or not is_marker(out[-1]):
        if out and not out[-1].endswith('\n'):
            out[-1] += '\n'
        out.append(MARKER)
    return config, out, toggle and config.external is not None


@contextmanager
def atomic_write(path):
    tmp = tempfile.NamedTemporaryFile(
        'w', encoding=ENCODING, errors=ERRORS, newline='',
        dir=dirname(path) or os.curdir, prefix='.' + basename(path) + '.',
        delete=False)
    try:
        with tmp:
            yield tmp
        if os.path.exists(path):
            shutil.copymode(path, tmp.name)
        os.replace(tmp.name, path)
    except BaseException:
        os.unlink(tmp.name)
        raise


def insert_deps(file, deps, externalize=False, force_inline=False):
    config, header, external = configure(read_header(file), externalize, force_inline)
    if externalize:
        with atomic_write(file) as out:
            out.writelines(header)
            if external and config.include_command is not None:
                out.write(config.include_command + ' ' + config.external + '\n')
        return file
    if external:
        file = config.external
        header = [MARKER]
    with atomic_write(file) as out:
        out.writelines(header)
        out.writelines(emit_rules(deps, config))
    return file


def run(dirs, mkfiles, externalize=False, force_inline=False):
    deps = Deps()
    for mkfile in mkfiles:
        seed_paths(deps, mkfile)
    if not externalize:
        for source in scan_dirs(deps, dirs):
            deps.scan(source)
    for mkfile in mkfiles:
        written = insert_deps(mkfile, deps, externalize, force_inline)
        log.debug('%s: wrote %s', mkfile, written)
    return deps


def parse_args(args):
    args = list(args)
    opts = {'dirs': [], 'mkfiles': [], 'externalize': False, 'force_inline': False, 'debug': 0}
    mkmode = False
    while args:
        arg = args.pop(0)
        if arg == '-m':
            if not args:
                raise UnknownOption('option requires an argument: -m')
            opts['mkfiles'].append(args.pop(0))
        elif arg == '-i':
            opts['force_inline'] = True
        elif arg == '-e':
            opts['externalize'] = True
        elif arg == '-d':
            opts['debug'] += 1
        elif arg == '-M':
            mkmode = True
        elif arg == '--' and mkmode:
            mkmode = False
        elif arg.startswith('-'):
            raise UnknownOption('unknown option: ' + arg)
        elif mkmode:
            opts['mkfiles'].append(arg)
        else:
            opts['dirs'].append(arg)
    return opts


def main(argv=None):
    try:
        opts = parse_args(sys.argv[1:] if argv is None else argv)
        logging.basicConfig(format='%(name)s: %(message)s')
        log.setLevel(logging.DEBUG if opts['debug'] else logging.INFO)
        run(opts['dirs'], opts['mkfiles'], opts['externalize'], opts['force_inline'])
    except GenDepsError as e:
        sys.exit('gendeps.py: ' + str(e))
    return 0


if __name__ == '__main__':
    sys.exit(main())
