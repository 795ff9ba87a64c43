import json, logging, os, threading, uuid

log = logging.getLogger("Identity")


class IdentityRegistry:
    """
    Bidirectional map between firewall rule descriptions and the UUIDs
    exposed to Home Assistant as unique ids.

    The file is a JSON list of [descr, uuid] pairs and is replaced in full
    on every new allocation. Saving is synchronous, so an id is on disk before
    it is ever published. A failed write is logged and the id stays usable
    in memory only. The status API reads from another thread, so allocation
    and saving hold a lock.
    """

    def __init__(self, path="uuids.json"):
        self.path = path
        self.uuids = {}      # descr → uuid
        self.rule_ids = {}   # uuid → descr
        self.lock = threading.RLock()

    @staticmethod
    def _parse(pairs):
        if not isinstance(pairs, list):
            raise ValueError("expected a list of [descr, uuid] pairs")
        uuids, rule_ids = {}, {}
        for entry in pairs:
            if not (isinstance(entry, list) and len(entry) == 2
                    and all(isinstance(v, str) for v in entry)):
                raise ValueError(f"invalid entry {entry!r}")
            rule_id, rule_uuid = entry
            if rule_id in uuids or rule_uuid in rule_ids:
                raise ValueError(f"duplicate entry {entry!r}")
            uuids[rule_id] = rule_uuid
            rule_ids[rule_uuid] = rule_id
        return uuids, rule_ids

    def load(self):
        """Load all pairs from disk. A missing or malformed file means an empty registry."""
        with self.lock:
            self.uuids, self.rule_ids = {}, {}
            try:
                with open(self.path) as f:
                    self.uuids, self.rule_ids = self._parse(json.load(f))
            except FileNotFoundError:
                log.info(f"[Identity] No identity file at {self.path}, starting empty")
            except (OSError, ValueError) as e:
                log.warning(f"[Identity] Ignoring unreadable identity file {self.path}: {e}")
            else:
                log.info(f"[Identity] Loaded {len(self.uuids)} rule ids from {self.path}")
        return self

    def save(self):
        tmp_path = f"{self.path}.tmp"
        with self.lock:
            try:
                with open(tmp_path, "w") as f:
                    json.dump(list(self.uuids.items()), f)
                os.replace(tmp_path, self.path)
                return True
            except OSError as e:
                log.error(f"[Identity] Error while saving UUIDs: {e}")
                return False

    def get_or_create(self, rule_id: str) -> str:
        with self.lock:
            rule_uuid = self.uuids.get(rule_id)
            if rule_uuid is None:
                rule_uuid = str(uuid.uuid4())
                self.uuids[rule_id] = rule_uuid
                self.rule_ids[rule_uuid] = rule_id
                log.debug(f"[Identity] Allocated {rule_uuid} for rule '{rule_id}'")
                self.save()
            return rule_uuid

    def lookup(self, rule_id: str):
        """Forward lookup that never allocates."""
        return self.uuids.get(rule_id)

    def reverse_lookup(self, rule_uuid: str):
        return self.rule_ids.get(rule_uuid)

    def __len__(self):
        return len(self.uuids)
