from .common import (CardistError, NotFoundError, ResolutionError, DependencyCycleError,
                     SignatureError, SumMismatchError, BuildFailedError, CommandFailedError,
                     OperationCancelledError, ArchiveError, MissingSignatureError,
                     InvalidSignatureError, SecurityError, StoreIOError, InvalidConfigError)
from .recipe import (Prototype, Recipe, Instance, SourceFile, SourceDir, RecipeSession,
                     file_instance, dir_instance, fetch_instance)
from .signature import calc_signature
from .executor import RunContext
from .store import Store, PackageInfo, read_package_info
from .car import (CarInfo, CarPacker, unpack, inspect, export_car, generate_signing_key,
                  load_signing_key)
from .resolver import Resolver, PackagePlan, CarLookup, CarSubstitute
from .installer import InstallEnv, install_plan
from .gc import Collector
