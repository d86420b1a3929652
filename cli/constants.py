# Note: artifact names are not file names, just labels that steps use
# to declare what they consume, produce and delete.
ARTIFACT_FRAGMENTS = "fragments"
ARTIFACT_MERGED_PROFILE = "merged-profile"
ARTIFACT_TEST_BINARIES = "test-binaries"
ARTIFACT_REPORT = "report"

FRAGMENT_GLOB = "*.profraw"
PROFDATA_SUFFIX = ".profdata"

# `%p` = process ID, `%m` = module signature; together they keep concurrently
# running test binaries (and shared libraries) from clobbering each other.
FRAGMENT_NAME_TEMPLATE = "{stem}-%p-%m.profraw"

INSTRUMENT_COVERAGE_FLAGS = ["-C", "instrument-coverage"]

BUILD_OUTPUT_DIR = "target/debug/deps"
BINARY_GLOB = "*"
# Cargo leaves these next to the test executables in target/*/deps.
NON_BINARY_SUFFIXES = frozenset([".d", ".rlib", ".rmeta", ".so", ".dylib", ".dll", ".pdb"])

REPORT_DIR = "coverage"
REPORT_ENTRY_PAGE = "index.html"

DEMANGLER = "rustfilt"
IGNORE_FILENAME_REGEXES = [r"/\.cargo/registry", r"^/rustc/"]
SOURCE_ROOT = "src"

STEP_TIMEOUT_S = 3600.0

CARGO_METADATA_KEY = "run-coverage"

EXIT_CODES = {
    "ConfigError": 2,
    "ToolchainNotFound": 3,
    "StaleArtifactsRemain": 4,
    "TestRunFailed": 10,
    "NoFragmentsProduced": 11,
    "MergeFailed": 12,
    "NoBinariesFound": 13,
    "ReportGenerationFailed": 14,
}