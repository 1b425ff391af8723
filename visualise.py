import sqlite3
import os
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns
import argparse
import base64
from io import BytesIO
from rich.console import Console
from rich.table import Table

# --- Constants ---
DB_FILE = "repack_history.db"

# --- Initial Setup ---
console = Console()
plt.style.use('seaborn-v0_8-whitegrid')

# --- Data Loading ---
def load_dataframes(db_path=DB_FILE):
    """Loads processed and failed rows from the repack history database."""
    if not os.path.exists(db_path):
        console.print(f"[yellow]Warning: Database file not found at '{db_path}'[/yellow]")
        return None, None
    try:
        conn = sqlite3.connect(db_path)
        try:
            df = pd.read_sql_query("SELECT * FROM repack_history", conn)
        finally:
            conn.close()
    except (sqlite3.Error, pd.errors.DatabaseError) as e:
        console.print(f"[red]Error reading database '{db_path}': {e}[/red]")
        return None, None

    processed_df = df[df['status'] == 'processed'].copy()
    failed_df = df[df['status'] == 'failed'].copy()
    console.print(f"[green]Loaded {len(processed_df)} repacked and {len(failed_df)} failed records from '{db_path}'[/green]")
    return processed_df, failed_df

# --- HTML Generation ---
def fig_to_base64(fig):
    """Converts a Matplotlib figure to a Base64 encoded string."""
    buf = BytesIO()
    fig.savefig(buf, format='png', bbox_inches='tight')
    buf.seek(0)
    return base64.b64encode(buf.getvalue()).decode('utf-8')

def generate_html_report(stats_html_list, plot_html_parts):
    """Generates the full HTML report string from parts."""
    stats_section = "".join(stats_html_list)
    plots_section = "".join(plot_html_parts)

    style = """
    <style>
        body { font-family: sans-serif; margin: 2em; background-color: #f0f0f0; color: #333; }
        h1, h2 { color: #1e1e1e; border-bottom: 2px solid #ccc; padding-bottom: 5px; }
        .container { max-width: 1200px; margin: auto; background-color: white; padding: 1em 2em; border-radius: 8px; }
        .stats-grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(400px, 1fr)); gap: 1em; }
        .plot-grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(500px, 1fr)); gap: 2em; }
        .plot { text-align: center; margin-bottom: 2em; padding: 1em; background-color: #f9f9f9; }
        .plot img { max-width: 100%; height: auto; }
    </style>
    """
    body = f"""
    <div class="container">
        <h1>CBZ Repack Report</h1>
        <h2>Statistics</h2>
        <div class="stats-grid">
            {stats_section}
        </div>
        <h2>Visualizations</h2>
        <div class="plot-grid">
            {plots_section}
        </div>
    </div>
    """
    return f"<!DOCTYPE html><html><head><title>CBZ Repack Report</title>{style}</head><body>{body}</body></html>"


# --- Data Analysis and Plotting ---
def get_statistics_tables(processed_df, failed_df):
    """Returns a list of Rich tables with repack statistics."""
    tables = []

    if processed_df is not None and not processed_df.empty:
        total_saved_gb = processed_df['bytes_saved'].sum() / (1024**3)

        stats_table = Table(title="Repack Summary", title_style="bold magenta")
        stats_table.add_column("Metric", style="cyan"); stats_table.add_column("Value", style="bold green")
        stats_table.add_row("Archives Repacked", str(len(processed_df)))
        stats_table.add_row("Total Space Saved", f"{total_saved_gb:.3f} GB")
        stats_table.add_row("Average Compression Ratio", f"{processed_df['ratio_percent'].mean():.2f}%")
        stats_table.add_row("Median Compression Ratio", f"{processed_df['ratio_percent'].median():.2f}%")
        stats_table.add_row("Best Compression Ratio", f"{processed_df['ratio_percent'].min():.2f}%")
        stats_table.add_row("Images Skipped", str(int(processed_df['skipped_count'].sum())))
        tables.append(stats_table)

        best_table = Table(title="Top 5 Best Repacks (lowest ratio)", title_style="bold magenta")
        best_table.add_column("File Path", style="green", no_wrap=True); best_table.add_column("Ratio", style="bold green")
        for _, row in processed_df.nsmallest(5, 'ratio_percent').iterrows():
            best_table.add_row(row['path'], f"{row['ratio_percent']:.2f}%")
        tables.append(best_table)

        if processed_df['processing_duration_seconds'].notna().any():
            perf_table = Table(title="Processing Performance", title_style="bold magenta")
            perf_table.add_column("Metric", style="cyan"); perf_table.add_column("Value", style="bold green")
            perf_table.add_row("Total Processing Time", f"{processed_df['processing_duration_seconds'].sum() / 60:.2f} minutes")
            perf_table.add_row("Average Time per Archive", f"{processed_df['processing_duration_seconds'].mean():.2f} seconds")
            total_images = processed_df['image_count'].sum()
            if total_images > 0:
                avg_time_per_image = processed_df['processing_duration_seconds'].sum() / total_images
                perf_table.add_row("Average Time per Image", f"{avg_time_per_image:.3f} seconds")
            tables.append(perf_table)

    if failed_df is not None and not failed_df.empty:
        failure_table = Table(title="Top 5 Failure Reasons", title_style="bold magenta")
        failure_table.add_column("Error Message", style="red"); failure_table.add_column("Count", style="bold red")
        for error, count in failed_df['error_message'].fillna("unknown").value_counts().nlargest(5).items():
            display_error = (error[:100] + '...') if len(error) > 100 else error
            failure_table.add_row(display_error, str(count))
        tables.append(failure_table)

    return tables


def _finish(fig, to_html, title):
    plt.tight_layout()
    if to_html: return fig
    console.print(f"[bold]Displaying plot: {title}...[/bold]"); plt.show()
    plt.close(fig)
    return None

def plot_ratio_distribution(df, to_html=False):
    if df.empty: return None
    fig, ax = plt.subplots(figsize=(10, 6))
    df['ratio_percent'].plot(kind='hist', bins=30, color='skyblue', ec='black', ax=ax)
    ax.set_title('Distribution of Compression Ratios', fontsize=16)
    ax.set_xlabel('New Size / Old Size (%)', fontsize=12); ax.set_ylabel('Number of Archives', fontsize=12)
    mean_val = df['ratio_percent'].mean()
    ax.axvline(mean_val, color='red', linestyle='dashed', linewidth=2, label=f"Mean: {mean_val:.2f}%")
    ax.legend()
    return _finish(fig, to_html, "Distribution of Compression Ratios")

def plot_size_vs_ratio(df, to_html=False):
    if df.empty: return None
    fig, ax = plt.subplots(figsize=(10, 6))
    ax.scatter(df['original_size'] / (1024 * 1024), df['ratio_percent'], alpha=0.5)
    ax.set_title('Original File Size vs. Compression Ratio', fontsize=16)
    ax.set_xlabel('Original File Size (MB)', fontsize=12); ax.set_ylabel('Compression Ratio (%)', fontsize=12)
    ax.set_xscale('log')
    return _finish(fig, to_html, "Original Size vs. Compression Ratio")

def plot_summary_pie(processed_count, failed_count, to_html=False):
    if processed_count == 0 and failed_count == 0: return None
    fig, ax = plt.subplots(figsize=(8, 8))
    ax.pie([processed_count, failed_count], labels=['Repacked', 'Failed'], colors=['lightgreen', 'lightcoral'],
           autopct='%1.1f%%', startangle=140)
    ax.axis('equal')
    ax.set_title('Repacked vs. Failed Archives', fontsize=16)
    return _finish(fig, to_html, "Repacked vs. Failed")

def plot_cumulative_savings(df, to_html=False):
    if df.empty: return None
    df = df.assign(repacked_at=pd.to_datetime(df['repacked_at'])).sort_values(by='repacked_at')
    cumulative_gb = df['bytes_saved'].cumsum() / (1024**3)
    fig, ax = plt.subplots(figsize=(12, 6))
    ax.plot(df['repacked_at'], cumulative_gb, marker='.', linestyle='-', markersize=4)
    ax.set_title('Cumulative Space Saved Over Time', fontsize=16)
    ax.set_xlabel('Date of Repack', fontsize=12); ax.set_ylabel('Cumulative Space Saved (GB)', fontsize=12)
    ax.grid(True, which="both", ls="--")
    return _finish(fig, to_html, "Cumulative Space Saved")

def plot_size_distribution(df, to_html=False):
    if df.empty: return None
    sizes = pd.DataFrame({'original_size_mb': df['original_size'] / (1024 * 1024),
                          'new_size_mb': df['new_size'] / (1024 * 1024)})
    fig, ax = plt.subplots(figsize=(8, 7))
    sns.boxplot(data=sizes, palette="Set2", ax=ax)
    ax.set_title('Distribution of Original vs. Repacked Archive Sizes', fontsize=16)
    ax.set_ylabel('File Size (MB)', fontsize=12)
    return _finish(fig, to_html, "Original vs. Repacked Size Distribution")

def plot_ratio_by_quality(df, to_html=False):
    if df.empty or df['quality'].nunique() == 0: return None
    fig, ax = plt.subplots(figsize=(10, 7))
    sns.boxplot(x='quality', y='ratio_percent', data=df, palette="pastel", ax=ax)
    sns.stripplot(x='quality', y='ratio_percent', data=df, color=".25", size=3, ax=ax)
    ax.set_title('Compression Ratio by WebP Quality', fontsize=16)
    ax.set_xlabel('Quality Setting', fontsize=12); ax.set_ylabel('Compression Ratio (%)', fontsize=12)
    return _finish(fig, to_html, "Compression Ratio by Quality")

def plot_duration_distribution(df, to_html=False):
    """Plots a histogram of the processing durations."""
    if df.empty or df['processing_duration_seconds'].isna().all():
        return None
    fig, ax = plt.subplots(figsize=(10, 6))
    df['processing_duration_seconds'].plot(kind='hist', bins=30, color='lightcoral', ec='black', ax=ax)
    ax.set_title('Distribution of Processing Times', fontsize=16)
    ax.set_xlabel('Processing Duration (seconds)', fontsize=12); ax.set_ylabel('Number of Archives', fontsize=12)
    mean_val = df['processing_duration_seconds'].mean()
    ax.axvline(mean_val, color='blue', linestyle='dashed', linewidth=2, label=f"Mean: {mean_val:.2f}s")
    ax.legend()
    return _finish(fig, to_html, "Distribution of Processing Times")

PLOT_FUNCTIONS = [plot_ratio_distribution, plot_size_vs_ratio, plot_cumulative_savings,
                  plot_size_distribution, plot_ratio_by_quality, plot_duration_distribution]


def build_html(processed_df, failed_df):
    stats_html_parts = []
    for table in get_statistics_tables(processed_df, failed_df):
        capture_console = Console(record=True, width=120)
        capture_console.print(table)
        stats_html_parts.append(capture_console.export_html(inline_styles=True))

    processed_count = len(processed_df) if processed_df is not None else 0
    failed_count = len(failed_df) if failed_df is not None else 0
    figures = [plot_summary_pie(processed_count, failed_count, to_html=True)]
    if processed_count > 0:
        figures += [plot_func(processed_df.copy(), to_html=True) for plot_func in PLOT_FUNCTIONS]

    plot_html_parts = []
    for i, fig in enumerate(f for f in figures if f is not None):
        plot_html_parts.append(f'<div class="plot"><img src="data:image/png;base64,{fig_to_base64(fig)}" alt="Plot {i+1}"></div>')
        plt.close(fig)
    return generate_html_report(stats_html_parts, plot_html_parts)


def main(argv=None):
    """Main function to run the analysis."""
    parser = argparse.ArgumentParser(description="Visualize CBZ repack history.")
    parser.add_argument("db_file", nargs="?", default=DB_FILE, help="Repack history database (default: %(default)s)")
    parser.add_argument("--html-report", type=str, help="Generate an HTML report instead of displaying plots. Provide filename.")
    args = parser.parse_args(argv)

    console.print("\n[bold green]--- Repack History Visualizer ---[/bold green]")
    processed_df, failed_df = load_dataframes(args.db_file)
    processed_count = len(processed_df) if processed_df is not None else 0
    failed_count = len(failed_df) if failed_df is not None else 0

    if processed_count == 0 and failed_count == 0:
        console.print("[bold red]No data found in the database. Exiting.[/bold red]")
        return 1

    if args.html_report:
        console.print(f"Generating HTML report at [cyan]{args.html_report}[/cyan]...")
        html_content = build_html(processed_df, failed_df)
        try:
            with open(args.html_report, 'w', encoding='utf-8') as f:
                f.write(html_content)
            console.print(f"[bold green]Successfully created report: {args.html_report}[/bold green]")
        except IOError as e:
            console.print(f"[red]Error writing HTML file: {e}[/red]")
            return 1
    else:
        for table in get_statistics_tables(processed_df, failed_df):
            console.print(table)
        plot_summary_pie(processed_count, failed_count)
        if processed_count > 0:
            for plot_func in PLOT_FUNCTIONS:
                plot_func(processed_df.copy())

    console.print("\n[bold green]--- Analysis Complete ---[/bold green]")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
