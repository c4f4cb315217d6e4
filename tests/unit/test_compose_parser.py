import yaml
import pytest

from stackpilot.errors import ConfigurationError
from stackpilot.PARSERS.compose_parser import ComposeParser


def test_parse(tmp_path):
    compose_content = {
        'name': 'shop',
        'services': {
            'web': {
                'image': 'nginx:latest',
                'ports': ['80:80'],
                'environment': {
                    'DEBUG': 'true'
                },
                'restart': 'always',
                'depends_on': ['db'],
            },
            'db': {
                'image': 'postgres:13',
                'volumes': ['db_data:/var/lib/postgresql/data']
            }
        },
        'volumes': {
            'db_data': {}
        }
    }

    compose_file = tmp_path / "docker-compose.yml"
    with open(compose_file, 'w') as f:
        yaml.dump(compose_content, f, sort_keys=False)

    definition = ComposeParser(context={}).parse(str(compose_file))
    services = {svc.name: svc for svc in definition.services}

    assert definition.name == 'shop'
    assert definition.path == str(compose_file)
    assert definition.service_names() == ['web', 'db']
    assert services['web'].image == 'nginx:latest'
    assert services['web'].ports == {80: 80}
    assert services['web'].environment['DEBUG'] == 'true'
    assert services['web'].restart == 'always'
    assert services['web'].depends_on == ['db']
    assert services['db'].declaration_index == 1

    assert 'db_data' in definition.volumes
    assert services['db'].volumes[0].source == 'db_data'
    assert services['db'].volumes[0].target == '/var/lib/postgresql/data'


def test_parse_missing_file(tmp_path):
    with pytest.raises(ConfigurationError):
        ComposeParser().parse(str(tmp_path / "docker-compose.yml"))


def test_invalid_yaml():
    with pytest.raises(ConfigurationError, match="invalid YAML"):
        ComposeParser(context={}).parse_from_string("services: [unclosed")


def test_duplicate_keys_rejected():
    content = """
services:
  api:
    image: a
  api:
    image: b
"""
    with pytest.raises(ConfigurationError, match="api"):
        ComposeParser(context={}).parse_from_string(content)


def test_non_mapping_service_rejected():
    with pytest.raises(ConfigurationError) as exc:
        ComposeParser(context={}).parse_from_string("services:\n  api: just-a-string\n")
    assert exc.value.field_path == "services.api"


def test_interpolation_with_defaults():
    content = """
services:
  api:
    image: "shop/api:${TAG:-latest}"
    environment:
      - DB_HOST=${DB_HOST}
      - PRICE=$$5
"""
    definition = ComposeParser(context={"DB_HOST": "database"}).parse_from_string(content)
    api = definition.services[0]
    assert api.image == "shop/api:latest"
    assert api.environment == {"DB_HOST": "database", "PRICE": "$5"}


def test_required_variable_missing():
    with pytest.raises(ConfigurationError, match="set TAG"):
        ComposeParser(context={}).parse_from_string("services:\n  api:\n    image: a:${TAG:?set TAG}\n")


def test_substituted_values_keep_yaml_syntax_characters():
    content = """
services:
  api:
    image: shop/api
    environment:
      - PASSWORD=${PASSWORD}
      - GREETING=${GREETING}
    command: echo ${GREETING}
"""
    parser = ComposeParser(context={"PASSWORD": "abc #def", "GREETING": "hello: world"})
    api = parser.parse_from_string(content).services[0]
    assert api.environment == {"PASSWORD": "abc #def", "GREETING": "hello: world"}
    assert api.command == ["echo", "hello:", "world"]


def test_variables_in_comments_are_ignored():
    content = """
# export ${DB_PASSWORD:?required} before deploying
services:
  db:
    image: postgres:16  # ${ALSO_IGNORED:?nope}
"""
    assert ComposeParser(context={}).parse_from_string(content).services[0].image == "postgres:16"


def test_interpolated_numbers_in_typed_fields():
    content = """
services:
  api:
    deploy:
      replicas: ${REPLICAS}
    healthcheck:
      test: ["CMD", "true"]
      retries: ${RETRIES}
    environment:
      PIN: ${PIN}
"""
    parser = ComposeParser(context={"REPLICAS": "3", "RETRIES": "5", "PIN": "0123"})
    api = parser.parse_from_string(content).services[0]
    assert api.replicas == 3
    assert api.healthcheck.retries == 5
    assert api.environment == {"PIN": "0123"}


def test_parse_service_on_its_own(tmp_path):
    (tmp_path / "api.env").write_text("MODE=file\n")
    api = ComposeParser(context={"HOST": "db"}).parse_service(
        "api", 0, {"image": "shop/api", "env_file": "api.env", "environment": ["HOST"]}, str(tmp_path)
    )
    assert api.name == "api"
    assert api.environment == {"MODE": "file", "HOST": "db"}


def test_dotenv_file_is_interpolation_context(tmp_path, monkeypatch):
    monkeypatch.delenv("API_TAG", raising=False)
    (tmp_path / ".env").write_text("API_TAG=1.2.3\n")
    compose_file = tmp_path / "compose.yml"
    compose_file.write_text("services:\n  api:\n    image: shop/api:${API_TAG}\n")

    definition = ComposeParser().parse(str(compose_file))
    assert definition.services[0].image == "shop/api:1.2.3"


def test_shell_environment_wins_over_dotenv(tmp_path, monkeypatch):
    monkeypatch.setenv("API_TAG", "from-shell")
    (tmp_path / ".env").write_text("API_TAG=from-file\n")
    compose_file = tmp_path / "compose.yml"
    compose_file.write_text("services:\n  api:\n    image: shop/api:${API_TAG}\n")

    assert ComposeParser().parse(str(compose_file)).services[0].image == "shop/api:from-shell"


def test_env_file_then_environment(tmp_path):
    (tmp_path / "api.env").write_text("MODE=file\nLEVEL=debug\n")
    content = """
services:
  api:
    env_file: api.env
    environment:
      MODE: explicit
      ENABLED: true
"""
    api = ComposeParser(context={}).parse_from_string(content, base_dir=str(tmp_path)).services[0]
    assert api.environment == {"MODE": "explicit", "LEVEL": "debug", "ENABLED": "true"}


def test_missing_env_file(tmp_path):
    content = "services:\n  api:\n    env_file: missing.env\n"
    with pytest.raises(ConfigurationError) as exc:
        ComposeParser(context={}).parse_from_string(content, base_dir=str(tmp_path))
    assert exc.value.field_path == "services.api.env_file"

    optional = "services:\n  api:\n    env_file:\n      - path: missing.env\n        required: false\n"
    api = ComposeParser(context={}).parse_from_string(optional, base_dir=str(tmp_path)).services[0]
    assert api.environment == {}


def test_ports():
    content = """
services:
  api:
    ports:
      - "8080:80"
      - "127.0.0.1:9000:9000/tcp"
      - "3000"
      - "7000-7001:8000-8001"
      - target: 443
        published: 8443
"""
    api = ComposeParser(context={}).parse_from_string(content).services[0]
    assert api.ports == {80: 8080, 9000: 9000, 3000: None, 8000: 7000, 8001: 7001, 443: 8443}


def test_invalid_port():
    with pytest.raises(ConfigurationError) as exc:
        ComposeParser(context={}).parse_from_string("services:\n  api:\n    ports: ['abc:def']\n")
    assert exc.value.field_path == "services.api.ports[0]"


def test_volumes():
    content = """
services:
  db:
    volumes:
      - data:/var/lib/data
      - ./conf:/etc/conf:ro
      - /scratch
      - type: bind
        source: ./logs
        target: /logs
        read_only: true
"""
    volumes = ComposeParser(context={}).parse_from_string(content).services[0].volumes
    assert [str(v) for v in volumes] == ["data:/var/lib/data", "./conf:/etc/conf:ro", ":/scratch", "./logs:/logs:ro"]


def test_depends_on_mapping_form():
    content = """
services:
  web:
    depends_on:
      api:
        condition: service_healthy
      cache:
        condition: service_started
"""
    assert ComposeParser(context={}).parse_from_string(content).services[0].depends_on == ["api", "cache"]


def test_healthcheck_durations():
    content = """
services:
  api:
    healthcheck:
      test: curl -f http://localhost/health
      interval: 1m30s
      timeout: 500ms
      retries: 5
      start_period: 10s
"""
    probe = ComposeParser(context={}).parse_from_string(content).services[0].healthcheck
    assert probe.test == ["CMD-SHELL", "curl -f http://localhost/health"]
    assert probe.interval == 90.0
    assert probe.timeout == 0.5
    assert probe.retries == 5
    assert probe.start_period == 10.0
    assert probe.active


def test_healthcheck_disabled():
    content = """
services:
  a:
    healthcheck:
      disable: true
  b:
    healthcheck:
      test: ["NONE"]
"""
    a, b = ComposeParser(context={}).parse_from_string(content).services
    assert not a.healthcheck.active
    assert not b.healthcheck.active


def test_healthcheck_bad_duration():
    with pytest.raises(ConfigurationError) as exc:
        ComposeParser(context={}).parse_from_string("services:\n  api:\n    healthcheck:\n      interval: soon\n")
    assert exc.value.field_path == "services.api.healthcheck.interval"


def test_replicas_and_restart():
    content = """
services:
  worker:
    restart: on-failure:3
    deploy:
      replicas: 3
  legacy:
    scale: 2
"""
    worker, legacy = ComposeParser(context={}).parse_from_string(content).services
    assert worker.restart == "on-failure"
    assert worker.replicas == 3
    assert legacy.replicas == 2


def test_command_string_is_split():
    content = "services:\n  api:\n    command: python -m http.server 8000\n"
    assert ComposeParser(context={}).parse_from_string(content).services[0].command == [
        "python", "-m", "http.server", "8000"
    ]
