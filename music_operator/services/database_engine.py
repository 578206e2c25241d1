"""
Database engine strategies.

An engine supplies the images, defaults and node scripts for the database
tier. The strategy is chosen once, from settings.database_engine, and passed
to the builder; there is no mutable registry.

Usage:
    >>> engine = get_engine("mariadb")
    >>> engine.default_image
    'mariadb:10.11'
"""
from abc import ABC, abstractmethod
from typing import Dict, List, Type

from music_operator.exceptions import ValidationError

DATA_DIR = "/var/lib/mysql"
CONFIG_DIR = "/etc/mysql/conf.d"
INIT_CONFIG_DIR = "/db-config"


class DatabaseEngine(ABC):
    """Engine-specific knowledge used by the database topologies."""

    name: str = ""
    container_name: str = ""
    default_image: str = ""
    default_port: int = 3306
    default_storage_size: str = "10Gi"
    default_database: str = "musicdb"
    supports_galera: bool = False

    root_password_env: str = "MYSQL_ROOT_PASSWORD"
    database_env: str = "MYSQL_DATABASE"

    def ping_command(self) -> str:
        return "mysqladmin ping -uroot -p${MYSQL_ROOT_PASSWORD}"

    @abstractmethod
    def primary_config_script(self, gtid: bool) -> str:
        """Init script writing the primary's server config to /db-config."""

    @abstractmethod
    def replica_config_script(self, gtid: bool) -> str:
        """Init script writing a replica's config; server-id is 200 + ordinal."""

    @abstractmethod
    def replica_setup_script(self, primary_host: str, gtid: bool) -> str:
        """Sidecar script attaching a replica to the primary."""

    def galera_config_script(self, cluster_name: str, peers: List[str], sst_auth: bool) -> str:
        raise ValidationError(
            f"Database engine '{self.name}' does not support high availability clusters",
            details={"engine": self.name},
        )

    def galera_sst_user_script(self) -> str:
        raise ValidationError(
            f"Database engine '{self.name}' does not support high availability clusters",
            details={"engine": self.name},
        )

    def _wait_and_grant(self, primary_host: str) -> str:
        return f"""
echo "Waiting for local server to be ready..."
until mysql -h 127.0.0.1 -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "SELECT 1" > /dev/null 2>&1; do
  sleep 2
done
echo "Waiting for primary to be ready..."
until mysql -h {primary_host} -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "SELECT 1" > /dev/null 2>&1; do
  sleep 2
done
echo "Primary is ready, ensuring replication user..."
mysql -h {primary_host} -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "CREATE USER IF NOT EXISTS '${{REPLICATION_USER}}'@'%' IDENTIFIED BY '${{REPLICATION_PASSWORD}}'; GRANT REPLICATION SLAVE ON *.* TO '${{REPLICATION_USER}}'@'%'; FLUSH PRIVILEGES;"
"""


class MariaDBEngine(DatabaseEngine):
    """MariaDB with GTID replication and Galera multi-primary support."""

    name = "mariadb"
    container_name = "mariadb"
    default_image = "mariadb:10.11"
    supports_galera = True

    def primary_config_script(self, gtid: bool) -> str:
        strict = "gtid_strict_mode=ON\n" if gtid else ""
        return f"""set -e
cat <<'EOF' > {INIT_CONFIG_DIR}/server-id.cnf
[mysqld]
server-id=1
log_bin=mysql-bin
binlog_format=ROW
{strict}log_slave_updates=ON
EOF
"""

    def replica_config_script(self, gtid: bool) -> str:
        strict = "gtid_strict_mode=ON\n" if gtid else ""
        return f"""set -e
ordinal=${{POD_NAME##*-}}
server_id=$((200 + ordinal))
cat <<EOF > {INIT_CONFIG_DIR}/server-id.cnf
[mysqld]
server-id=${{server_id}}
log_bin=mysql-bin
binlog_format=ROW
{strict}log_slave_updates=ON
read_only=ON
skip_slave_start=1
EOF
"""

    def replica_setup_script(self, primary_host: str, gtid: bool) -> str:
        position = "MASTER_USE_GTID=slave_pos" if gtid else "MASTER_USE_GTID=no"
        return f"""set -e
{self._wait_and_grant(primary_host)}
echo "Configuring replica..."
mysql -h 127.0.0.1 -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "STOP SLAVE; RESET SLAVE ALL; CHANGE MASTER TO MASTER_HOST='{primary_host}', MASTER_USER='${{REPLICATION_USER}}', MASTER_PASSWORD='${{REPLICATION_PASSWORD}}', MASTER_PORT={self.default_port}, {position}; START SLAVE;"
echo "Replication setup complete. Sleeping..."
sleep infinity
"""

    def galera_config_script(self, cluster_name: str, peers: List[str], sst_auth: bool) -> str:
        """
        Init script for a Galera node.

        Node 0 bootstraps a new cluster (empty gcomm:// address) only when no
        peer answers on the replication port; every other case joins the
        peer list.
        """
        peer_list = ",".join(peers)
        peer_hosts = " ".join(peers)
        if sst_auth:
            sst = "wsrep_sst_method=mariabackup\nwsrep_sst_auth=${REPLICATION_USER}:${REPLICATION_PASSWORD}"
        else:
            sst = "wsrep_sst_method=rsync"
        return f"""set -e
ordinal=${{POD_NAME##*-}}
cluster_address="gcomm://{peer_list}"
if [ "$ordinal" = "0" ]; then
  peer_up=0
  for peer in {peer_hosts}; do
    case "$peer" in ${{POD_NAME}}.*) continue ;; esac
    if timeout 2 bash -c "</dev/tcp/$peer/4567" > /dev/null 2>&1; then
      peer_up=1
      break
    fi
  done
  if [ "$peer_up" = "0" ]; then
    echo "No peer answered, bootstrapping a new cluster"
    cluster_address="gcomm://"
    if [ -f {DATA_DIR}/grastate.dat ]; then
      sed -i 's/safe_to_bootstrap: 0/safe_to_bootstrap: 1/' {DATA_DIR}/grastate.dat
    fi
  fi
fi
cat <<EOF > {INIT_CONFIG_DIR}/galera.cnf
[mysqld]
binlog_format=ROW
default_storage_engine=InnoDB
innodb_autoinc_lock_mode=2
bind-address=0.0.0.0
wsrep_on=ON
wsrep_provider=/usr/lib/galera/libgalera_smm.so
wsrep_cluster_name={cluster_name}
wsrep_cluster_address=${{cluster_address}}
wsrep_node_name=${{POD_NAME}}
wsrep_node_address=${{POD_IP}}
{sst}
EOF
"""

    def galera_sst_user_script(self) -> str:
        return f"""set -e
until mysql -h 127.0.0.1 -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "SELECT 1" > /dev/null 2>&1; do
  sleep 2
done
mysql -h 127.0.0.1 -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "CREATE USER IF NOT EXISTS '${{REPLICATION_USER}}'@'localhost' IDENTIFIED BY '${{REPLICATION_PASSWORD}}'; GRANT RELOAD, PROCESS, LOCK TABLES, BINLOG MONITOR ON *.* TO '${{REPLICATION_USER}}'@'localhost'; FLUSH PRIVILEGES;"
echo "SST user ensured. Sleeping..."
sleep infinity
"""


class MySQLEngine(DatabaseEngine):
    """MySQL 8 with GTID auto-positioning; no multi-primary support."""

    name = "mysql"
    container_name = "mysql"
    default_image = "mysql:8.0"

    def primary_config_script(self, gtid: bool) -> str:
        gtid_lines = "gtid_mode=ON\nenforce_gtid_consistency=ON\n" if gtid else ""
        return f"""set -e
cat <<'EOF' > {INIT_CONFIG_DIR}/server-id.cnf
[mysqld]
server-id=1
log_bin=mysql-bin
binlog_format=ROW
{gtid_lines}log_replica_updates=ON
EOF
"""

    def replica_config_script(self, gtid: bool) -> str:
        gtid_lines = "gtid_mode=ON\nenforce_gtid_consistency=ON\n" if gtid else ""
        return f"""set -e
ordinal=${{POD_NAME##*-}}
server_id=$((200 + ordinal))
cat <<EOF > {INIT_CONFIG_DIR}/server-id.cnf
[mysqld]
server-id=${{server_id}}
log_bin=mysql-bin
binlog_format=ROW
{gtid_lines}log_replica_updates=ON
read_only=ON
skip_replica_start=ON
EOF
"""

    def replica_setup_script(self, primary_host: str, gtid: bool) -> str:
        if gtid:
            position = "SOURCE_AUTO_POSITION=1"
            lookup = ""
        else:
            position = "SOURCE_LOG_FILE='${log_file}', SOURCE_LOG_POS=${log_pos}"
            lookup = f"""status=$(mysql -h {primary_host} -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -N -e "SHOW MASTER STATUS")
log_file=$(echo "$status" | awk '{{print $1}}')
log_pos=$(echo "$status" | awk '{{print $2}}')
"""
        return f"""set -e
{self._wait_and_grant(primary_host)}
{lookup}echo "Configuring replica..."
mysql -h 127.0.0.1 -P {self.default_port} -uroot -p${{MYSQL_ROOT_PASSWORD}} -e "STOP REPLICA; RESET REPLICA ALL; CHANGE REPLICATION SOURCE TO SOURCE_HOST='{primary_host}', SOURCE_USER='${{REPLICATION_USER}}', SOURCE_PASSWORD='${{REPLICATION_PASSWORD}}', SOURCE_PORT={self.default_port}, GET_SOURCE_PUBLIC_KEY=1, {position}; START REPLICA;"
echo "Replication setup complete. Sleeping..."
sleep infinity
"""


ENGINES: Dict[str, Type[DatabaseEngine]] = {
    MariaDBEngine.name: MariaDBEngine,
    MySQLEngine.name: MySQLEngine,
}


def get_engine(name: str) -> DatabaseEngine:
    """
    Instantiate the engine strategy for a name.

    Raises:
        ValidationError: If the engine is unknown
    """
    engine_cls = ENGINES.get(name.lower())
    if engine_cls is None:
        raise ValidationError(
            f"Unknown database engine '{name}'",
            details={"supported": sorted(ENGINES)},
        )
    return engine_cls()
