"""
:mod:`cardist.core.signature` --- Recipe signatures
===================================================

The signature of a recipe is the structural hash (see
:mod:`cardist.core.hasher`) of a ``signature`` struct with the fields

``Name``, ``Version``
    of the recipe (version defaults to ``unknown``)
``Constraints``
    the constraint map the recipe is evaluated under
``Instances``
    the set of ``name-version-signature`` strings of the resolved inputs
``FuncSig``, ``PostSig``
    the hash-mode digests of the install and post-install phases
``Dependencies``
    the set of IDs of declared plus explicit dependencies

The ID of a recipe is ``<signature>-<name>-<version>``, and so is a store
path. Since maps and sets are XOR-combined, neither dependency order
nor constraint insertion order matter. Any error while resolving inputs
or hashing phases aborts the computation; there are no partial
signatures.
"""

import logging

from .common import SignatureError, DependencyCycleError, CardistError, UNKNOWN_VERSION
from .hasher import hash_type, hash_struct, format_digest
from .executor import RunContext

logger = logging.getLogger(__name__)


def hash_signature_fields(name, version, constraints, instances, func_sig, post_sig,
                          dependencies):
    """Raw digest of the ``signature`` struct; the canonical hash of a recipe"""
    return hash_struct('signature', {
        'Name': name,
        'Version': version,
        'Constraints': dict(constraints or {}),
        'Instances': frozenset(instances),
        'FuncSig': func_sig,
        'PostSig': post_sig,
        'Dependencies': frozenset(dependencies),
    })


def make_id(signature, name, version):
    return '%s-%s-%s' % (signature, name, version or UNKNOWN_VERSION)


def split_id(pkg_id):
    """Splits an ID into ``(signature, name, version)``.

    Names may contain dashes; versions may not.
    """
    sig, sep, rest = pkg_id.partition('-')
    name, sep2, version = rest.rpartition('-')
    if not sep or not sep2:
        raise ValueError('not a package ID: %s' % pkg_id)
    return sig, name, version


def calc_phase_signature(phase):
    """Runs `phase` in hash mode and returns the base58 digest"""
    if not callable(phase):
        raise SignatureError('build phase is not callable: %r' % (phase,))
    sink = hash_type()
    ctx = RunContext.for_hashing(sink)
    try:
        phase(ctx)
    except CardistError:
        raise
    except Exception as e:
        raise SignatureError('error hashing build phase %s: %s: %s' % (
            getattr(phase, '__name__', phase), type(e).__name__, e))
    return format_digest(sink)


def calc_instance_signature(instance):
    if instance.phase is not None:
        return calc_phase_signature(instance.phase)
    if instance.data is not None:
        return format_digest(hash_type(instance.data))
    raise SignatureError('instance %s has no signature source' % instance.name)


def calc_signature(recipe, constraints=None, in_progress=None):
    """
    Computes the signature and ID of `recipe`.

    Parameters
    ----------
    recipe : :class:`~cardist.core.recipe.Recipe`

    constraints : dict (optional)
        Constraints to evaluate under; defaults to those of the recipe.

    in_progress : set (optional)
        Keys of the recipes whose signature is being computed further up
        the current walk; a new walk starts with an empty set. Meeting one
        of them again raises :class:`DependencyCycleError`.

    Returns
    -------
    (signature, id)
    """
    if recipe.instance is not None:
        inst = recipe.instance
        return inst.signature, inst.id

    if constraints is None:
        constraints = recipe.constraints
    if in_progress is None:
        in_progress = set()
    key = id(recipe)
    if key in in_progress:
        raise DependencyCycleError('dependency cycle through %s' % recipe.name, [recipe.name])
    in_progress.add(key)
    try:
        instances = [inp.resolve().identity() for inp in recipe.inputs]
        func_sig = post_sig = None
        if recipe.install is not None:
            func_sig = calc_phase_signature(recipe.install)
        if recipe.post_install is not None:
            post_sig = calc_phase_signature(recipe.post_install)
        for dep in recipe.dependencies + recipe.explicit_dependencies:
            dep.signature_and_id(in_progress)
        dependencies = [dep.id for dep in recipe.all_dependencies()]
    finally:
        in_progress.discard(key)

    digest = hash_signature_fields(recipe.name, recipe.version, constraints, instances,
                                   func_sig, post_sig, dependencies)
    sig = format_digest(digest)
    pkg_id = make_id(sig, recipe.name, recipe.version)
    logger.debug('signature of %s-%s: %s' % (recipe.name, recipe.version, sig))
    return sig, pkg_id
