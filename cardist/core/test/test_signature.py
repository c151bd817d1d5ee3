from .. import signature
from ..recipe import Prototype, Recipe, Instance, SourceFile, file_instance
from ..common import SignatureError, DependencyCycleError
from ..hasher import hash_type, format_digest
from .utils import assert_raises


def configure_make(ctx):
    ctx.system('./configure', '--prefix=%s' % ctx.prefix)
    ctx.system('make', 'install')


def make_recipe(name='zlib', version='1.2.11', deps=(), constraints=None, **kw):
    kw.setdefault('install', configure_make)
    return Recipe(Prototype(name=name, version=version, dependencies=list(deps), **kw),
                  constraints=constraints)


def test_id_format():
    r = make_recipe()
    sig, pkg_id = signature.calc_signature(r)
    assert pkg_id == '%s-zlib-1.2.11' % sig
    assert r.id == pkg_id
    assert signature.split_id(pkg_id) == (sig, 'zlib', '1.2.11')
    assert signature.split_id('%s-gnu-tar-1.0' % sig) == (sig, 'gnu-tar', '1.0')
    with assert_raises(ValueError):
        signature.split_id('nodashes')


def test_default_version():
    r = Recipe(Prototype(name='thing', install=configure_make))
    assert r.id.endswith('-thing-unknown')


def test_deterministic():
    assert make_recipe().id == make_recipe().id
    assert make_recipe().id != make_recipe(version='1.2.12').id
    assert make_recipe().id != make_recipe(name='zlib-ng').id


def test_phase_contents_matter():
    def other(ctx):
        ctx.system('./configure', '--prefix=%s' % ctx.prefix, '--static')
        ctx.system('make', 'install')

    assert make_recipe().id != make_recipe(install=other).id
    assert make_recipe().id != make_recipe(post_install=configure_make).id


def test_dependency_order_irrelevant():
    a = make_recipe('a', '1')
    b = make_recipe('b', '1')
    x1 = make_recipe('x', '1', deps=[a, b])
    x2 = make_recipe('x', '1', deps=[b, a])
    assert x1.id == x2.id
    assert x1.id != make_recipe('x', '1', deps=[a]).id


def test_dependency_signature_propagates():
    a1 = make_recipe('a', '1')
    a2 = make_recipe('a', '2')
    assert make_recipe('x', '1', deps=[a1]).id != make_recipe('x', '1', deps=[a2]).id


def test_constraint_order_irrelevant():
    c1 = {}
    c1['os'] = 'linux'
    c1['arch'] = 'x86_64'
    c2 = {}
    c2['arch'] = 'x86_64'
    c2['os'] = 'linux'
    assert make_recipe(constraints=c1).id == make_recipe(constraints=c2).id
    assert make_recipe(constraints=c1).id != make_recipe(constraints={'os': 'darwin'}).id


def test_bookkeeping_fields_do_not_change_id():
    r1 = Recipe(Prototype(name='zlib', version='1', install=configure_make),
                request_name='zlib')
    r2 = Recipe(Prototype(name='zlib', version='1', install=configure_make),
                request_name='libz', repo='github.com/example/recipes')
    assert r1.id == r2.id


def test_inputs_enter_signature():
    r1 = make_recipe(input=SourceFile('patch.diff', data=b'one'))
    r2 = make_recipe(input=SourceFile('patch.diff', data=b'two'))
    r3 = make_recipe(input={'source': SourceFile('patch.diff', data=b'one')})
    assert r1.id != r2.id
    assert r1.id == r3.id


def test_instance_input():
    inst = file_instance('etc/config', b'setting=1\n')
    assert inst.name == 'fetch-file'
    assert inst.version == inst.signature[:8]
    r1 = make_recipe(input={'cfg': inst})
    r2 = make_recipe(input={'cfg': file_instance('etc/config', b'setting=2\n')})
    assert r1.id != r2.id


def test_instance_dependency():
    def build_helper(ctx):
        ctx.write_file('bin/helper', '#!/bin/sh\n')

    inst = Instance('helper', phase=build_helper)
    r = make_recipe(deps=[inst])
    assert r.dependencies[0].id == inst.id
    assert inst.version == inst.signature[:8]
    assert r.id != make_recipe().id


def test_missing_input_is_fatal():
    r = make_recipe(input=SourceFile('/nonexistent/dir/source.tar.gz'))
    with assert_raises(SignatureError):
        r.id


def test_broken_phase_is_fatal():
    def broken(ctx):
        raise RuntimeError('oops')

    with assert_raises(SignatureError):
        make_recipe(install=broken).id


def test_missing_name():
    with assert_raises(SignatureError):
        Recipe(Prototype(version='1'))


def test_cycle_detected():
    a = make_recipe('a', '1')
    b = make_recipe('b', '1', deps=[a])
    a.dependencies.append(b)
    with assert_raises(DependencyCycleError):
        a.id


def test_cycle_detection_is_scoped_to_one_walk():
    a = make_recipe('a', '1')
    b = make_recipe('b', '1', deps=[a])
    walk = set([id(a)])
    with assert_raises(DependencyCycleError):
        signature.calc_signature(b, in_progress=walk)
    # the failed walk leaves only its own caller's entries behind
    assert walk == set([id(a)])
    assert b._sig is None

    # a fresh walk is not affected by the one above
    sig, pkg_id = signature.calc_signature(b)
    assert pkg_id == b.id
    walk = set()
    assert b.signature_and_id(walk) == (sig, pkg_id)
    assert walk == set()


def test_instance_signature_sources():
    assert Instance('x', signature='abc').signature == 'abc'
    with assert_raises(ValueError):
        Instance('x')
    with assert_raises(ValueError):
        Instance('x', signature='abc', data=b'1')
    assert Instance('x', data=b'1').signature == Instance('y', data=b'1').signature


def test_phase_signature():
    sig = signature.calc_phase_signature(configure_make)
    assert sig == signature.calc_phase_signature(configure_make)
    assert sig != signature.calc_phase_signature(lambda ctx: ctx.system('make'))
    with assert_raises(SignatureError):
        signature.calc_phase_signature('make install')


def test_calc_instance_signature():
    inst = Instance('helper', phase=configure_make)
    assert signature.calc_instance_signature(inst) == \
        signature.calc_phase_signature(configure_make)
    assert signature.calc_instance_signature(Instance('blob', data=b'1')) == \
        format_digest(hash_type(b'1'))
