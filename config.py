# config.py
import os

RANDOM_STATE = 42
VERBOSE = True

# Embedding layout produced by the extractor
EMBEDDING_DIM = 512
EXTRACTOR_INPUT_SIZE = 112

# Verification
DISTANCE_METRIC = 'euclidean'
DISTANCE_METRICS = ['euclidean', 'cosine']
PAIR_CHUNK_SIZE = 50_000
BOOTSTRAP_ITERATIONS = 1000
CONFIDENCE_LEVEL = 0.95

# Parallelism (joblib threads)
N_JOBS = -1

# Reduction strategies
RELATIVE_PERCENT_RANGE = list(range(100, 0, -5))
RANDOM_TRIALS = 100
RANDOM_FULL_RESAMPLE = False

MAX_SUBSET_EVALUATIONS = 5_000_000
SUBSET_CHUNK_SIZE = 2048

QUANT_MODE = 'per_dimension'
QUANT_MODES = ['per_dimension', 'global']
QUANT_BITS_RANGE = list(range(1, 17))
MAX_QUANT_BITS = 32

# Select-then-quantize composite
PROPOSED_DIMENSIONS = [
    7, 9, 11, 21, 23, 30, 33, 35, 60, 61, 68, 84, 87, 92, 100, 120, 133, 134,
    136, 156, 163, 165, 167, 172, 180, 193, 202, 208, 209, 210, 211, 220, 241,
    249, 262, 264, 265, 268, 276, 279, 280, 281, 283, 294, 308, 322, 324, 325,
    327, 338, 354, 360, 364, 366, 371, 382, 408, 420, 421, 427, 433, 458, 464,
    469, 470, 478, 479, 485, 488, 490,
]
PROPOSED_BITS = 8

HEATMAP_MODE = 'separation'
HEATMAP_MODES = ['separation', 'ablation', 'solo']

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DATA_PATH = os.path.join(BASE_DIR, "data")
MODELS_PATH = os.path.join(DATA_PATH, "models")
METRICS_PATH = os.path.join(BASE_DIR, "results", "metrics")
EMBEDDINGS_PATH = os.path.join(BASE_DIR, "results", "embeddings")
REDUCTIONS_PATH = os.path.join(BASE_DIR, "results", "reductions")

# Dataset complexity classes
DATASETS = {
    'easy': {
        'name': 'lfw',
        'format': 'lfw',
        'pairs_file': os.path.join(DATA_PATH, "lfw-pairs.txt"),
        'path_flag': '--lfwpath',
    },
    'hard': {
        'name': 'cplfw',
        'format': 'cplfw',
        'pairs_file': os.path.join(DATA_PATH, "pairs_CPLFW.txt"),
        'path_flag': '--cplfwpath',
    },
}

EXTRACTOR_MODEL_FILE = os.path.join(MODELS_PATH, "arcface.pt")
CACHE_FILE_TEMPLATE = os.path.join(DATA_PATH, "cache-{name}.json")

for path in [DATA_PATH, METRICS_PATH, EMBEDDINGS_PATH, REDUCTIONS_PATH]:
    os.makedirs(path, exist_ok=True)

LOG_FILE = os.path.join(BASE_DIR, "results", "experiment.log")

def get_config_summary():
    return {
        'Embedding': {
            'EMBEDDING_DIM': EMBEDDING_DIM,
            'EXTRACTOR_MODEL_FILE': EXTRACTOR_MODEL_FILE,
        },
        'Verification': {
            'Distance Metric': DISTANCE_METRIC,
            'Bootstrap Iterations': BOOTSTRAP_ITERATIONS,
        },
        'Reduction': {
            'Random Trials': RANDOM_TRIALS,
            'Random Full Resample': RANDOM_FULL_RESAMPLE,
            'Max Subset Evaluations': MAX_SUBSET_EVALUATIONS,
            'Quant Mode': QUANT_MODE,
            'Proposed Dimensions': len(PROPOSED_DIMENSIONS),
            'Proposed Bits': PROPOSED_BITS,
        },
        'Runtime': {
            'N Jobs': N_JOBS,
            'Random State': RANDOM_STATE,
        }
    }

def print_config():
    print("PROJECT CONFIGURATION")
    summary = get_config_summary()
    for section, params in summary.items():
        print(f"\n{section}:")
        for key, value in params.items():
            print(f"  {key}: {value}")
