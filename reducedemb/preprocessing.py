"""
This module loads verification datasets into the record store.

It provides functionality for:
- Validating the configured dataset root before any processing starts
- Parsing the LFW pairs file (easy complexity class)
- Parsing the CPLFW pairs file (hard complexity class)
- Deduplicating images shared by several pairs into a single record
"""

import csv
import logging
import os

import config
from reducedemb.errors import InvalidDatasetPath, InvalidParameter
from reducedemb.records import Dataset, PairLabel, Record

logger = logging.getLogger(__name__)


def lfw_image_path(basepath, name, number):
    return os.path.join(basepath, name, f"{name}_{int(number):04d}.jpg")


def parse_lfw_pairs(pairs_file, basepath):
    """
    Parse an LFW pairs file.

    Rows with three tab-separated fields (name, n1, n2) are genuine pairs;
    rows with four fields (name1, n1, name2, n2) are impostor pairs. The
    header row and any other row shape are skipped.

    Returns:
        list: (genuine, path1, identity1, path2, identity2) tuples
    """
    entries = []
    with open(pairs_file, newline="") as fh:
        for row in csv.reader(fh, delimiter="\t"):
            row = [field.strip() for field in row if field.strip()]
            if len(row) == 3:
                name, nr1, nr2 = row
                entries.append((True, lfw_image_path(basepath, name, nr1), name,
                                lfw_image_path(basepath, name, nr2), name))
            elif len(row) == 4:
                name1, nr1, name2, nr2 = row
                entries.append((False, lfw_image_path(basepath, name1, nr1), name1,
                                lfw_image_path(basepath, name2, nr2), name2))
    return entries


def cplfw_identity(filename):
    stem = os.path.splitext(os.path.basename(filename))[0]
    return stem.rsplit("_", 1)[0]


def parse_cplfw_pairs(pairs_file, basepath):
    """
    Parse a CPLFW pairs file.

    Each pair spans two consecutive lines of the form "<file> <flag>"; the
    flag of the first line is 1 for genuine pairs and 0 for impostor pairs.

    Returns:
        list: (genuine, path1, identity1, path2, identity2) tuples
    """
    entries = []
    pending = None
    with open(pairs_file) as fh:
        for line in fh:
            fields = line.split()
            if not fields:
                continue
            if pending is None:
                genuine = len(fields) > 1 and fields[1] == "1"
                pending = (genuine, fields[0])
            else:
                genuine, first = pending
                second = fields[0]
                entries.append((genuine, os.path.join(basepath, first), cplfw_identity(first),
                                os.path.join(basepath, second), cplfw_identity(second)))
                pending = None
    if pending is not None:
        logger.warning("Ignoring unpaired trailing entry %s in %s", pending[1], pairs_file)
    return entries


PAIR_PARSERS = {
    'lfw': parse_lfw_pairs,
    'cplfw': parse_cplfw_pairs,
}


class DatasetLoader:
    """
    Loads one of the configured complexity classes into a Dataset.

    Attributes:
        dimension: Embedding width D assigned to every loaded dataset
        data_info: Dictionary describing the last loaded dataset
    """

    def __init__(self, dimension=config.EMBEDDING_DIM):
        self.dimension = dimension
        self.data_info = {}

    @staticmethod
    def validate_paths(root, pairs_file):
        """
        Check that the dataset root and pairs file can be read.

        Raises:
            InvalidDatasetPath: If either path is missing or unreadable
        """
        if not root or not os.path.isdir(root) or not os.access(root, os.R_OK):
            raise InvalidDatasetPath(f"dataset root {root!r} is not a readable directory", record=root)
        if not os.path.isfile(pairs_file) or not os.access(pairs_file, os.R_OK):
            raise InvalidDatasetPath(f"pairs file {pairs_file!r} is not readable", record=pairs_file)

    def load_dataset(self, complexity, root, pairs_file=None):
        """
        Load the dataset for a complexity class ("easy" or "hard").

        Args:
            complexity: Key of config.DATASETS
            root: Directory containing the dataset images
            pairs_file: Optional override of the configured pairs file

        Returns:
            Dataset: Records (not yet embedded) and pair labels
        """
        if complexity not in config.DATASETS:
            raise InvalidParameter(
                f"unknown dataset {complexity!r}, expected one of {sorted(config.DATASETS)}"
            )
        settings = config.DATASETS[complexity]
        pairs_file = pairs_file or settings['pairs_file']
        self.validate_paths(root, pairs_file)

        logger.info("Loading %s pairs from %s", settings['name'], pairs_file)
        entries = PAIR_PARSERS[settings['format']](pairs_file, root)
        dataset = self.build_dataset(settings['name'], entries)

        self.data_info = dataset.statistics()
        logger.info("Dataset loaded: %d images, %d pairs (%d genuine, %d impostor)",
                    self.data_info['n_records'], self.data_info['n_pairs'],
                    self.data_info['n_genuine'], self.data_info['n_impostor'])
        return dataset

    def build_dataset(self, name, entries):
        """Turn parsed pair entries into a Dataset, one record per distinct path."""
        records = []
        index_by_path = {}

        def record_index(path, identity):
            if path not in index_by_path:
                index_by_path[path] = len(records)
                records.append(Record(identity=identity, path=path))
            return index_by_path[path]

        pairs = []
        for genuine, path1, identity1, path2, identity2 in entries:
            pairs.append(PairLabel(record_index(path1, identity1), record_index(path2, identity2), genuine))

        return Dataset(name, records, pairs, dimension=self.dimension)

    def get_data_info(self):
        return self.data_info
