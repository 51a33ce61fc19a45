"""Shared constants for sonar_prep."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Tuple

PACKAGE_NAME = "sonar_prep"
DEFAULT_CONFIG_DIR_NAME = "sonar_prep"

CONFIG_ENV_VAR = "SONAR_PREP_CONFIG"
BUILD_DIR_ENV_VAR = "SONAR_PREP_BUILD_DIR"
USER_HOME_ENV_VAR = "SONAR_USER_HOME"
SCANNER_PARAMS_ENV_VAR = "SONARQUBE_SCANNER_PARAMS"
JAVA_HOME_ENV_VAR = "JAVA_HOME"
SCANNER_OPTS_ENV_VAR = "SONAR_SCANNER_OPTS"

EXIT_CODE_FAILURE = 1
EXIT_CODE_USAGE = 2
EXIT_CODE_INTERRUPT = 130

# Analysis property keys
PROP_PROJECT_KEY = "sonar.projectKey"
PROP_PROJECT_NAME = "sonar.projectName"
PROP_PROJECT_VERSION = "sonar.projectVersion"
PROP_PROJECT_BRANCH = "sonar.branch"
PROP_ORGANIZATION = "sonar.organization"
PROP_WORKING_DIRECTORY = "sonar.working.directory"
PROP_HOST_URL = "sonar.host.url"
PROP_SONARCLOUD_URL = "sonar.scanner.sonarcloudUrl"
PROP_API_BASE_URL = "sonar.scanner.apiBaseUrl"
PROP_REGION = "sonar.region"
PROP_USER_HOME = "sonar.userHome"
PROP_HTTP_TIMEOUT = "sonar.http.timeout"
PROP_VERBOSE = "sonar.verbose"
PROP_LOGIN = "sonar.login"
PROP_PASSWORD = "sonar.password"
PROP_TOKEN = "sonar.token"
PROP_JAVA_EXE_PATH = "sonar.scanner.javaExePath"
PROP_SKIP_JRE_PROVISIONING = "sonar.scanner.skipJreProvisioning"
PROP_OS = "sonar.scanner.os"
PROP_ARCH = "sonar.scanner.arch"
PROP_ENGINE_JAR_PATH = "sonar.scanner.engineJarPath"
PROP_SCANNER_CLI_PATH = "sonar.scanner.cliPath"
PROP_SCANNER_CLI_URL = "sonar.scanner.cliUrl"
PROP_TRUSTSTORE_PATH = "sonar.scanner.truststorePath"
PROP_TRUSTSTORE_PASSWORD = "sonar.scanner.truststorePassword"
PROP_EXCLUDE_TEST_PROJECTS = "sonar.dotnet.excludeTestProjects"
PROP_LEGACY_TEST_PROJECT_PATTERN = "sonar.cs.msbuild.testProjectPattern"
PROP_TEST_PROJECT_PATTERN = "sonar.msbuild.testProjectPattern"
OLD_DEFAULT_TEST_PROJECT_PATTERN = r"[^\\]*test[^\\]*$"

JAVAX_TRUSTSTORE = "javax.net.ssl.trustStore"
JAVAX_TRUSTSTORE_TYPE = "javax.net.ssl.trustStoreType"
JAVAX_TRUSTSTORE_PASSWORD = "javax.net.ssl.trustStorePassword"

# Keys that dedicated options own; -d may not set them.
RESERVED_CMDLINE_KEYS: Dict[str, str] = {
    PROP_PROJECT_KEY: "--key",
    PROP_PROJECT_NAME: "--name",
    PROP_PROJECT_VERSION: "--version",
    PROP_ORGANIZATION: "--organization",
    PROP_WORKING_DIRECTORY: "",
}

SENSITIVE_PROPERTY_KEYS: Tuple[str, ...] = (
    PROP_LOGIN,
    PROP_PASSWORD,
    PROP_TOKEN,
    "sonar.jdbc.password",
    "sonar.jdbc.username",
    PROP_TRUSTSTORE_PASSWORD,
    JAVAX_TRUSTSTORE_PASSWORD,
)

DEFAULT_PROPERTIES_FILE_NAME = "SonarQube.Analysis.xml"
ANALYSIS_CONFIG_FILE_NAME = "SonarQubeAnalysisConfig.xml"
ANALYSIS_DIR_NAME = ".sonarqube"
DEFAULT_USER_HOME_DIR_NAME = ".sonar"

DEFAULT_SONARCLOUD_URL = "https://sonarcloud.io"
DEFAULT_SONARCLOUD_API_URL = "https://api.sonarcloud.io"


@dataclass(frozen=True)
class CloudRegion:
    url: str
    api_url: str


CLOUD_REGIONS: Dict[str, CloudRegion] = {
    "": CloudRegion(DEFAULT_SONARCLOUD_URL, DEFAULT_SONARCLOUD_API_URL),
    "us": CloudRegion("https://sonarqube.us", "https://api.sonarqube.us"),
}

DEFAULT_HTTP_TIMEOUT_SECONDS = 100.0

CSHARP_LANGUAGE = "cs"
VBNET_LANGUAGE = "vbnet"
SUPPORTED_LANGUAGES = (CSHARP_LANGUAGE, VBNET_LANGUAGE)

# Server versions, as (major, minor) tuples
MERGE_SETTINGS_MIN_VERSION = (7, 4)
DEPRECATED_BELOW_VERSION = (7, 9)
SETTINGS_API_MIN_VERSION = (6, 3)
JRE_PROVISIONING_MIN_VERSION = (10, 6)

RULES_PAGE_SIZE = 500
RULES_FETCH_LIMIT = 10000

SCANNER_CLI_VERSION = "5.0.2.4997"
SCANNER_CLI_FILENAME = f"sonar-scanner-cli-{SCANNER_CLI_VERSION}.zip"
SCANNER_CLI_URL = (
    "https://binaries.sonarsource.com/Distribution/sonar-scanner-cli/"
    f"{SCANNER_CLI_FILENAME}"
)
SCANNER_CLI_DIR_NAME = f"sonar-scanner-{SCANNER_CLI_VERSION}"

RULESET_NAME = "Rules for SonarQube"
RULESET_DESCRIPTION = "This rule set was automatically generated from SonarQube"
RULESET_TOOLS_VERSION = "14.0"
RULESET_FILE_NAME = "Sonar-{language}.ruleset"
RULESET_NONE_FILE_NAME = "Sonar-{language}-none.ruleset"
MERGED_RULESET_FILE_NAME = "merged.ruleset"
SONARLINT_FILE_NAME = "SonarLint.xml"
